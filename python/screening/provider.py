"""
Screening provider contract and implementations.

The engine treats the provider as an opaque, possibly slow, possibly
failing dependency. Implementations raise ProviderError on any failure;
timeouts are enforced by the orchestrator, not here.

Implementations:
- HttpScreeningProvider: JSON over HTTP via requests
- StaticScreeningProvider: deterministic fixture table keyed by name
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple

import requests

from database.models import Entity, RiskTier, normalize_name
from screening.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderRequest:
    """Identifying attributes sent to the provider"""
    entity_id: str
    name: str
    date_of_birth: Optional[str] = None
    country: Optional[str] = None
    jurisdiction: Optional[str] = None
    industry: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: Entity) -> 'ProviderRequest':
        return cls(
            entity_id=str(entity.id),
            name=entity.display_name,
            date_of_birth=entity.date_of_birth,
            country=entity.country,
            jurisdiction=entity.jurisdiction,
            industry=entity.industry,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "dateOfBirth": self.date_of_birth,
            "country": self.country,
            "jurisdiction": self.jurisdiction,
            "industry": self.industry,
        }


@dataclass(frozen=True)
class ProviderResult:
    """Findings returned by the provider"""
    pep: bool = False
    sanctions: bool = False
    adverse_media: bool = False
    identity_verification_failed: bool = False
    risk_tier: RiskTier = RiskTier.LOW
    findings: Tuple[str, ...] = ()
    raw: Optional[Dict[str, Any]] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pep": self.pep,
            "sanctions": self.sanctions,
            "adverseMedia": self.adverse_media,
            "identityVerificationFailed": self.identity_verification_failed,
            "riskTier": self.risk_tier.value,
            "findings": list(self.findings),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProviderResult':
        """
        Build a result from a provider JSON document.

        Raises:
            ProviderError: If a required field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ProviderError("Provider response is not a JSON object")

        try:
            tier = RiskTier(str(data["riskTier"]).upper())
        except KeyError:
            raise ProviderError("Provider response missing 'riskTier'")
        except ValueError:
            raise ProviderError(f"Provider returned unknown risk tier: {data['riskTier']!r}")

        findings = data.get("findings") or []
        if not isinstance(findings, list):
            raise ProviderError("Provider 'findings' must be a list")

        return cls(
            pep=bool(data.get("pep", False)),
            sanctions=bool(data.get("sanctions", False)),
            adverse_media=bool(data.get("adverseMedia", False)),
            identity_verification_failed=bool(data.get("identityVerificationFailed", False)),
            risk_tier=tier,
            findings=tuple(str(f) for f in findings),
            raw=data,
        )


class ScreeningProvider(ABC):
    """Contract the engine needs from an external screening service"""

    name = "abstract"

    @abstractmethod
    def screen(self, request: ProviderRequest) -> ProviderResult:
        """
        Screen one entity.

        Args:
            request: Identifying attributes

        Returns:
            ProviderResult with match flags, tier and findings

        Raises:
            ProviderError: On any provider failure
        """


class HttpScreeningProvider(ScreeningProvider):
    """Provider backed by a JSON HTTP endpoint"""

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def screen(self, request: ProviderRequest) -> ProviderResult:
        url = f"{self.base_url}/screen"
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            response = self._session.post(
                url, json=request.to_dict(), headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.Timeout as e:
            raise ProviderError(f"Screening provider request timed out: {e}") from e
        except requests.RequestException as e:
            raise ProviderError(f"Screening provider request failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Screening provider returned invalid JSON: {e}") from e

        logger.debug("Provider answered for entity %s", request.entity_id)
        return ProviderResult.from_dict(data)


# Demo fixtures keyed by normalized name
DEFAULT_FIXTURES: Dict[str, ProviderResult] = {
    "james_chen": ProviderResult(
        adverse_media=True,
        risk_tier=RiskTier.MEDIUM,
        findings=(
            "Adverse Media: Australian Financial Review - "
            "Property investor linked to offshore investment fund",
        ),
    ),
    "sarah_smith": ProviderResult(risk_tier=RiskTier.LOW),
    "viktor_petrov": ProviderResult(
        pep=True,
        sanctions=True,
        risk_tier=RiskTier.MEDIUM,
        findings=(
            "PEP Match: Viktor Petrov - Government Official",
            "Sanctions Match: Viktor Petrov - OFAC List",
        ),
    ),
}


class StaticScreeningProvider(ScreeningProvider):
    """Deterministic provider answering from a fixture table"""

    name = "static"

    def __init__(
        self,
        fixtures: Optional[Dict[str, ProviderResult]] = None,
        default: Optional[ProviderResult] = None
    ):
        table = DEFAULT_FIXTURES if fixtures is None else fixtures
        self.fixtures = {normalize_name(key): value for key, value in table.items()}
        self.default = default or ProviderResult(risk_tier=RiskTier.LOW)

    def screen(self, request: ProviderRequest) -> ProviderResult:
        if not request.name:
            raise ProviderError("Cannot screen an entity without a name")
        return self.fixtures.get(normalize_name(request.name), self.default)


def create_provider(config) -> ScreeningProvider:
    """
    Build the provider selected in configuration.

    Args:
        config: ScreeningConfig section

    Returns:
        ScreeningProvider instance
    """
    if config.provider == "http":
        return HttpScreeningProvider(
            base_url=config.provider_url,
            api_key=config.provider_api_key,
            timeout=config.provider_timeout_seconds,
        )
    return StaticScreeningProvider()
