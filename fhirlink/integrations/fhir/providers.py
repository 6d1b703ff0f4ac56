"""
Provider Registry

Declarative description of every supported authorization server and FHIR
base. Static protocol facts (scope, auth strategy, audience rules) live in
code; endpoints and client credentials come from the environment:

    {PREFIX}_FHIR_BASE_URL, {PREFIX}_AUTHORIZATION_URL, {PREFIX}_TOKEN_URL,
    {PREFIX}_CLIENT_ID, {PREFIX}_CLIENT_SECRET, {PREFIX}_AUD

The registry is a pure lookup. Environment values are read when a provider
is resolved so deployments can rotate credentials without code changes.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional

from fhirlink.core.exceptions import ProviderMisconfigured, UnknownProvider


class ProviderCategory(str, Enum):
    EMR = "emr"
    PAYER = "payer"
    LAB = "lab"


class AuthStrategy(str, Enum):
    """How the client authenticates at the token endpoint."""

    PKCE = "pkce"  # Public client: code_verifier (+ client_id) in the form body
    BASIC = "basic"  # Confidential client: HTTP Basic with id:secret


@dataclass(frozen=True)
class ProviderDefinition:
    """Static, code-defined part of a provider."""

    id: str
    display_name: str
    category: ProviderCategory
    env_prefix: str
    scope: str
    auth_strategy: AuthStrategy
    requires_audience: bool = False
    fixed_audience: Optional[str] = None
    audience_from_env: bool = False

    def resolve(self, environ: Mapping[str, str]) -> "ProviderConfig":
        def env(name: str) -> Optional[str]:
            return environ.get(f"{self.env_prefix}_{name}") or None

        audience = self.fixed_audience
        if self.audience_from_env:
            audience = env("AUD")

        return ProviderConfig(
            id=self.id,
            display_name=self.display_name,
            category=self.category,
            scope=self.scope,
            auth_strategy=self.auth_strategy,
            requires_audience=self.requires_audience,
            fhir_base_url=env("FHIR_BASE_URL"),
            authorization_url=env("AUTHORIZATION_URL"),
            token_url=env("TOKEN_URL"),
            client_id=env("CLIENT_ID"),
            client_secret=env("CLIENT_SECRET"),
            audience=audience,
        )


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved, immutable provider configuration."""

    id: str
    display_name: str
    category: ProviderCategory
    scope: str
    auth_strategy: AuthStrategy
    requires_audience: bool
    fhir_base_url: Optional[str]
    authorization_url: Optional[str]
    token_url: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str] = None
    audience: Optional[str] = None

    @property
    def uses_pkce(self) -> bool:
        return self.auth_strategy == AuthStrategy.PKCE

    @property
    def is_configured(self) -> bool:
        """A provider is usable once it has a client id and authorization URL."""
        return bool(self.client_id and self.authorization_url)

    @property
    def audience_value(self) -> Optional[str]:
        """The ``aud`` parameter: a fixed audience, else the FHIR base URL."""
        if not self.requires_audience:
            return None
        return self.audience or self.fhir_base_url

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.client_id:
            missing.append("client_id")
        if not self.authorization_url:
            missing.append("authorization_url")
        if not self.token_url:
            missing.append("token_url")
        if not self.fhir_base_url:
            missing.append("fhir_base_url")
        if self.auth_strategy == AuthStrategy.BASIC and not self.client_secret:
            missing.append("client_secret")
        return missing

    def to_display_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "category": self.category.value,
            "configured": self.is_configured,
        }


# ==============================================================================
# Provider catalogue
# ==============================================================================

_ALL_READ = "patient/*.read launch/patient"

_HEALOW_SCOPE = " ".join(
    ["openid", "fhirUser"]
    + [
        f"patient/{resource}.read"
        for resource in (
            "AllergyIntolerance",
            "CarePlan",
            "CareTeam",
            "Condition",
            "Device",
            "DiagnosticReport",
            "DocumentReference",
            "Binary",
            "Encounter",
            "Goal",
            "Immunization",
            "MedicationAdministration",
            "MedicationRequest",
            "Observation",
            "Organization",
            "Patient",
            "Practitioner",
            "Procedure",
            "Provenance",
            "Medication",
            "Location",
            "PractitionerRole",
        )
    ]
)

_CLAIMS_SCOPE = (
    "patient/Patient.read patient/Coverage.read patient/ExplanationOfBenefit.read "
    "patient/MedicationRequest.read patient/Condition.read patient/Observation.read "
    "patient/Encounter.read"
)

PROVIDER_DEFINITIONS: List[ProviderDefinition] = [
    # EMRs
    ProviderDefinition(
        "epic", "Epic MyChart", ProviderCategory.EMR, "EPIC", _ALL_READ, AuthStrategy.PKCE, requires_audience=True
    ),
    ProviderDefinition(
        "smart", "SMART Health IT", ProviderCategory.EMR, "SMART", "openid fhirUser patient/*.read", AuthStrategy.PKCE
    ),
    ProviderDefinition(
        "cerner",
        "Oracle Health (Cerner)",
        ProviderCategory.EMR,
        "CERNER",
        _ALL_READ,
        AuthStrategy.PKCE,
        requires_audience=True,
    ),
    ProviderDefinition(
        "healow", "Healow (eClinicalWorks)", ProviderCategory.EMR, "HEALOW", _HEALOW_SCOPE, AuthStrategy.PKCE
    ),
    ProviderDefinition(
        "meditech", "MEDITECH Greenfield", ProviderCategory.EMR, "MEDITECH", "patient/*.read", AuthStrategy.BASIC
    ),
    ProviderDefinition(
        "nextgen",
        "NextGen Healthcare",
        ProviderCategory.EMR,
        "NEXTGEN",
        "launch/patient patient/*.read openid profile fhirUser",
        AuthStrategy.BASIC,
        requires_audience=True,
        fixed_audience="https://fhir.nextgen.com/nge/prod/fhir-api-r4/fhir/r4",
    ),
    ProviderDefinition(
        "athenahealth",
        "athenahealth",
        ProviderCategory.EMR,
        "ATHENAHEALTH",
        "patient/*.read launch/patient openid fhirUser",
        AuthStrategy.PKCE,
        requires_audience=True,
    ),
    # Payers
    ProviderDefinition(
        "aetna",
        "Aetna",
        ProviderCategory.PAYER,
        "AETNA",
        f"launch/patient {_CLAIMS_SCOPE}",
        AuthStrategy.BASIC,
        requires_audience=True,
        audience_from_env=True,
    ),
    ProviderDefinition(
        "anthem",
        "Anthem (Elevance Health)",
        ProviderCategory.PAYER,
        "ANTHEM",
        "launch/patient patient/*.read openid profile",
        AuthStrategy.PKCE,
        requires_audience=True,
        audience_from_env=True,
    ),
    ProviderDefinition(
        "cigna", "Cigna Healthcare", ProviderCategory.PAYER, "CIGNA", "openid fhirUser patient/*.read", AuthStrategy.PKCE
    ),
    ProviderDefinition("humana", "Humana", ProviderCategory.PAYER, "HUMANA", _CLAIMS_SCOPE, AuthStrategy.BASIC),
    ProviderDefinition(
        "uhc",
        "UnitedHealthcare",
        ProviderCategory.PAYER,
        "UHC",
        "patient/*.read launch/patient openid fhirUser",
        AuthStrategy.PKCE,
    ),
    ProviderDefinition(
        "kaiser",
        "Kaiser Permanente",
        ProviderCategory.PAYER,
        "KAISER",
        "patient/*.read",
        AuthStrategy.PKCE,
        requires_audience=True,
    ),
    ProviderDefinition(
        "centene",
        "Centene",
        ProviderCategory.PAYER,
        "CENTENE",
        "patient/*.read launch/patient openid fhirUser",
        AuthStrategy.PKCE,
        requires_audience=True,
    ),
    ProviderDefinition(
        "molina",
        "Molina Healthcare",
        ProviderCategory.PAYER,
        "MOLINA",
        "patient/*.read launch/patient openid fhirUser",
        AuthStrategy.BASIC,
    ),
    ProviderDefinition(
        "bcbsmn",
        "Blue Cross Blue Shield Minnesota",
        ProviderCategory.PAYER,
        "BCBS_MN",
        "launch/patient patient/*.read openid profile fhirUser offline_access",
        AuthStrategy.BASIC,
        requires_audience=True,
        fixed_audience="https://preview-api.bluecrossmn.com/fhir",
    ),
    ProviderDefinition(
        "bcbsma",
        "Blue Cross Blue Shield Massachusetts",
        ProviderCategory.PAYER,
        "BCBS_MA",
        "openid patient/*.read",
        AuthStrategy.BASIC,
    ),
    ProviderDefinition(
        "bcbstn", "Blue Cross Blue Shield Tennessee", ProviderCategory.PAYER, "BCBS_TN", "user/*.read", AuthStrategy.BASIC
    ),
    ProviderDefinition(
        "hcsc", "HCSC (BCBS IL/TX/MT/NM/OK)", ProviderCategory.PAYER, "HCSC", "openid hcscinteropscope", AuthStrategy.PKCE
    ),
    ProviderDefinition(
        "bluebutton",
        "Medicare (Blue Button 2.0)",
        ProviderCategory.PAYER,
        "BLUEBUTTON",
        "patient/Coverage.read patient/ExplanationOfBenefit.read patient/Patient.read profile",
        AuthStrategy.PKCE,
    ),
    # Labs
    ProviderDefinition(
        "quest", "Quest Diagnostics", ProviderCategory.LAB, "QUEST", _ALL_READ, AuthStrategy.PKCE, requires_audience=True
    ),
    ProviderDefinition(
        "labcorp", "LabCorp", ProviderCategory.LAB, "LABCORP", _ALL_READ, AuthStrategy.PKCE, requires_audience=True
    ),
]


class ProviderRegistry:
    """Lookup over the provider catalogue."""

    def __init__(
        self,
        definitions: Optional[List[ProviderDefinition]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._definitions: Dict[str, ProviderDefinition] = {d.id: d for d in (definitions or PROVIDER_DEFINITIONS)}
        self._environ = environ

    def _env(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def get(self, provider_id: str) -> ProviderConfig:
        definition = self._definitions.get(provider_id)
        if definition is None:
            raise UnknownProvider(provider_id)
        return definition.resolve(self._env())

    def require_configured(self, provider_id: str) -> ProviderConfig:
        """Resolve a provider that can run an OAuth flow, or raise."""
        config = self.get(provider_id)
        missing = config.missing_fields()
        if missing:
            raise ProviderMisconfigured(provider_id, missing)
        return config

    def is_configured(self, provider_id: str) -> bool:
        definition = self._definitions.get(provider_id)
        if definition is None:
            return False
        return definition.resolve(self._env()).is_configured

    def all_providers(self) -> List[str]:
        return list(self._definitions)

    def configured_providers(self) -> List[str]:
        return [provider_id for provider_id in self._definitions if self.is_configured(provider_id)]

    def list_for_display(self) -> List[Dict[str, object]]:
        """Configured providers first, then alphabetical by display name."""
        configs = [definition.resolve(self._env()) for definition in self._definitions.values()]
        configs.sort(key=lambda c: (not c.is_configured, c.display_name.lower()))
        return [c.to_display_dict() for c in configs]


# Global registry instance
provider_registry = ProviderRegistry()


def get_provider_registry() -> ProviderRegistry:
    return provider_registry


__all__ = [
    "AuthStrategy",
    "ProviderCategory",
    "ProviderConfig",
    "ProviderDefinition",
    "ProviderRegistry",
    "PROVIDER_DEFINITIONS",
    "provider_registry",
    "get_provider_registry",
]
