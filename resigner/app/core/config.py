"""
Centralized configuration management for the resigner service.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from pydantic import (
    Field,
    SecretStr,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from resigner.app.schemas.credentials import SigningCredential


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

EnvRequired = Annotated[
    str,
    StringConstraints(min_length=1, strip_whitespace=True),
]

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]

# Java package grammar: at least two dot-separated identifier segments.
PACKAGE_IDENTIFIER_RE = re.compile(
    r"^[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)+$"
)

DEFAULT_BUILD_TOOLS_DIR = Path("/opt/android-sdk/build-tools/34.0.0")


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if tool paths, signing parameters or the
    default package identifier are malformed.
    """

    # ---------------------------------------------------------------------
    # External build tools
    # ---------------------------------------------------------------------

    build_tools_dir: Annotated[
        Path,
        Field(
            default=DEFAULT_BUILD_TOOLS_DIR,
            description="Android build-tools directory holding zipalign/apksigner",
        ),
    ]

    zipalign_path: Annotated[
        Optional[Path],
        Field(
            default=None,
            description="Explicit zipalign binary (defaults to build_tools_dir/zipalign)",
        ),
    ]

    apksigner_path: Annotated[
        Optional[Path],
        Field(
            default=None,
            description="Explicit apksigner binary (defaults to build_tools_dir/apksigner)",
        ),
    ]

    tool_timeout_seconds: Annotated[
        float,
        Field(
            default=120.0,
            gt=0,
            description="Upper bound for a single external tool invocation",
        ),
    ]

    tool_workers: Annotated[
        int,
        Field(
            default=4,
            ge=1,
            le=64,
            description="Size of the dedicated tool invocation worker pool",
        ),
    ]

    # ---------------------------------------------------------------------
    # Alignment and signing parameters
    # ---------------------------------------------------------------------

    align_boundary: Annotated[
        int,
        Field(default=4, ge=1, description="zipalign byte boundary"),
    ]

    align_page_shared_objects: Annotated[
        bool,
        Field(
            default=True,
            description="Page-align uncompressed native libraries (zipalign -p)",
        ),
    ]

    v1_signing_enabled: bool = False
    v2_signing_enabled: bool = True
    v3_signing_enabled: bool = True
    v4_signing_enabled: bool = False

    min_sdk_version: Annotated[
        int,
        Field(
            default=21,
            ge=1,
            description="Minimum platform version passed to apksigner",
        ),
    ]

    # ---------------------------------------------------------------------
    # Signing credential (provisioned externally)
    # ---------------------------------------------------------------------

    keystore_path: Annotated[
        Path,
        Field(default=Path("keys/master.jks")),
    ]

    key_alias: EnvRequired = "master"

    store_password: SensitiveEnv = SecretStr("")

    key_password: Annotated[
        Optional[SecretStr],
        Field(
            default=None,
            description="Key password; the store password is used when unset",
        ),
    ]

    # ---------------------------------------------------------------------
    # Storage and job lifecycle
    # ---------------------------------------------------------------------

    work_dir: Annotated[
        Path,
        Field(
            default=Path("work"),
            description="Root under which per-job working directories are created",
        ),
    ]

    max_apk_size_mb: Annotated[
        int,
        Field(
            default=50,
            ge=1,
            le=512,
            description="OOM protection limit for uploads",
        ),
    ]

    max_inflated_size_mb: Annotated[
        int,
        Field(
            default=256,
            ge=1,
            le=4096,
            description=(
                "Upper bound on the decompressed size of an archive read "
                "during validation or repair"
            ),
        ),
    ]

    job_ttl_seconds: Annotated[
        Optional[float],
        Field(
            default=3600.0,
            description=(
                "Terminal jobs older than this are evicted together with "
                "their working files. None disables eviction."
            ),
        ),
    ]

    eviction_interval_seconds: Annotated[
        float,
        Field(default=60.0, gt=0),
    ]

    # ---------------------------------------------------------------------
    # Repair and retry
    # ---------------------------------------------------------------------

    default_package_identifier: Annotated[
        str,
        Field(
            default="com.auto.rebuilt",
            description="Placeholder package used when the descriptor is rebuilt",
        ),
    ]

    check_code_header: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Also require the dex magic header on the first validation "
                "pass. The retry pass always checks it."
            ),
        ),
    ]

    retry_backoff_seconds: Annotated[
        float,
        Field(default=0.5, ge=0),
    ]

    retry_backoff_max_seconds: Annotated[
        float,
        Field(default=5.0, ge=0),
    ]

    model_config = SettingsConfigDict(
        env_prefix="RESIGNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    # ---------------------------------------------------------------------
    # Validators
    # ---------------------------------------------------------------------

    @field_validator("align_boundary")
    @classmethod
    def boundary_is_power_of_two(cls, v: int) -> int:
        if v & (v - 1):
            raise ValueError(
                f"align_boundary must be a power of two, got {v}"
            )
        return v

    @field_validator("default_package_identifier")
    @classmethod
    def identifier_is_valid_package(cls, v: str) -> str:
        if not PACKAGE_IDENTIFIER_RE.match(v):
            raise ValueError(
                f"default_package_identifier '{v}' is not a valid package name"
            )
        return v

    @model_validator(mode="after")
    def at_least_one_scheme(self) -> "Settings":
        if not any(
            (
                self.v1_signing_enabled,
                self.v2_signing_enabled,
                self.v3_signing_enabled,
                self.v4_signing_enabled,
            )
        ):
            raise ValueError("At least one signature scheme must be enabled.")
        return self

    # ---------------------------------------------------------------------
    # Derived values
    # ---------------------------------------------------------------------

    @property
    def zipalign(self) -> Path:
        return self.zipalign_path or self.build_tools_dir / "zipalign"

    @property
    def apksigner(self) -> Path:
        return self.apksigner_path or self.build_tools_dir / "apksigner"

    @property
    def max_apk_bytes(self) -> int:
        return self.max_apk_size_mb * 1024 * 1024

    @property
    def max_inflated_bytes(self) -> int:
        return self.max_inflated_size_mb * 1024 * 1024

    def signing_credential(self) -> SigningCredential:
        """Build the opaque credential reference handed to the pipeline."""
        return SigningCredential(
            keystore_path=self.keystore_path,
            key_alias=self.key_alias,
            store_password=self.store_password,
            key_password=self.key_password,
        )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()  # singleton within process
