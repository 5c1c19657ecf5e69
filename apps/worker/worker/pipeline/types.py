"""Task payload and result types for the orchestrator."""

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from worker.core.errors import PayloadError
from worker.pipeline.state import VersionState

_PACKAGE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


class VersionTokenPair(BaseModel):
    """One version plus the token that authorizes its upload and notify calls."""

    model_config = ConfigDict(frozen=True)

    version: str
    token: SecretStr

    @field_validator("version")
    @classmethod
    def check_semver(cls, v: str) -> str:
        if not _SEMVER.match(v):
            raise ValueError(f"'{v}' is not a semantic version")
        return v

    @field_validator("token")
    @classmethod
    def check_token(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("token must not be empty")
        return v


class Payload(BaseModel):
    """Input of one orchestration run. Immutable.

    ``pubHostedUrl`` is accepted as an alias of ``registryBaseUrl``.
    """

    model_config = ConfigDict(frozen=True)

    package: str
    registry_base_url: str = Field(
        validation_alias=AliasChoices("registryBaseUrl", "pubHostedUrl", "registry_base_url"),
        serialization_alias="registryBaseUrl",
    )
    versions: tuple[VersionTokenPair, ...] = Field(min_length=1)

    @field_validator("package")
    @classmethod
    def check_package_name(cls, v: str) -> str:
        if not _PACKAGE_NAME.match(v):
            raise ValueError(f"'{v}' is not a valid package name")
        return v

    @field_validator("registry_base_url")
    @classmethod
    def check_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("registry base URL must be http(s)")
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_unique_versions(self) -> "Payload":
        seen: set[str] = set()
        for pair in self.versions:
            if pair.version in seen:
                raise ValueError(f"version {pair.version} appears more than once")
            seen.add(pair.version)
        return self

    @classmethod
    def parse(cls, data: Union[str, bytes, dict]) -> "Payload":
        """Build a Payload from JSON text or a decoded mapping.

        Raises:
            PayloadError: the input is not valid JSON or fails validation.
        """
        try:
            if isinstance(data, dict):
                return cls.model_validate(data)
            return cls.model_validate_json(data)
        except (ValidationError, json.JSONDecodeError) as exc:
            raise PayloadError(f"Invalid payload: {exc}") from exc


@dataclass
class VersionOutcome:
    """Terminal report for one version."""

    version: str
    state: VersionState
    blob_id: Optional[str] = None
    reasons: list[str] = field(default_factory=list)
    history: list[VersionState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == VersionState.NOTIFIED

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "state": self.state.value,
            "succeeded": self.succeeded,
            "blob_id": self.blob_id,
            "reasons": list(self.reasons),
            "history": [s.value for s in self.history],
        }


@dataclass
class AnalyzeResult:
    """Outcome of `analyze()`: one entry per requested version, in payload order."""

    package: str
    outcomes: list[VersionOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[VersionOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> list[VersionOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def outcome(self, version: str) -> Optional[VersionOutcome]:
        return next((o for o in self.outcomes if o.version == version), None)

    def to_dict(self) -> dict:
        return {
            "package": self.package,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "versions": [o.to_dict() for o in self.outcomes],
        }
