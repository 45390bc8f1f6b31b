"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PlayMode(str, Enum):
    """Where manifests and bundles come from."""

    SIMULATE = "simulate"
    OFFLINE = "offline"
    HOST = "host"
    WEB = "web"


class VerifyLevel(str, Enum):
    """How thoroughly cached bundle records are checked at startup."""

    LOW = "low"  # data and info files exist
    MIDDLE = "middle"  # + recorded size matches
    HIGH = "high"  # + recorded hash matches


class PackageConfig(BaseModel):
    """A validated configuration model for one managed package."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Package
    package_name: str
    play_mode: PlayMode = PlayMode.HOST

    # Remote
    host_server: str = ""
    fallback_host_server: str = ""
    append_time_ticks: bool = True

    # Storage
    buildin_root: str = "buildin"
    sandbox_root: str = "sandbox"
    simulate_manifest_path: str = ""
    verify_level: VerifyLevel = VerifyLevel.MIDDLE

    # Transfers
    max_concurrency: int = 10
    max_retry: int = 3
    timeout: int = 60
    auto_save_version: bool = True

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    @field_validator("package_name")
    @classmethod
    def validate_package_name(cls, v: str) -> str:
        if not v:
            raise ValueError("Package name cannot be empty.")
        return v

    @field_validator("max_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous transfers."""
        if v < 1 or v > 64:
            raise ValueError("Max concurrency must be between 1 and 64.")
        return v

    @field_validator("max_retry")
    @classmethod
    def validate_retry(cls, v: int) -> int:
        if v < 0 or v > 100:
            raise ValueError("Max retry must be between 0 and 100.")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Timeout must be at least 1 second.")
        return v

    @field_validator("host_server", "fallback_host_server")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_mode_requirements(self) -> "PackageConfig":
        """Checks that the selected play mode has what it needs."""
        if self.play_mode in (PlayMode.HOST, PlayMode.WEB) and not self.host_server:
            raise ValueError(
                f"Play mode '{self.play_mode.value}' requires 'host_server'."
            )
        if self.play_mode == PlayMode.SIMULATE and not self.simulate_manifest_path:
            raise ValueError("Play mode 'simulate' requires 'simulate_manifest_path'.")
        return self

    @property
    def effective_fallback_server(self) -> str:
        return self.fallback_host_server or self.host_server

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
