"""
Centralized configuration management for the ZZLD form service.

Pydantic v2 settings management: strict validation, zero secret leakage,
and fast failure on invalid configuration. Settings are parsed once at
startup and are immutable for the lifetime of the process.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


RESOURCES_DIR = Path(__file__).resolve().parent.parent / "resources"

DEFAULT_TEMPLATE_PATH = RESOURCES_DIR / "templates" / "zzld_declaration.pdf"
DEFAULT_FONT_PATH = RESOURCES_DIR / "fonts" / "DejaVuSans.ttf"

# PDF base-14 fonts carry no embedded glyph tables and cannot render Cyrillic.
STANDARD_PDF_FONTS = frozenset(
    {
        "courier",
        "courier-bold",
        "courier-oblique",
        "courier-boldoblique",
        "helvetica",
        "helvetica-bold",
        "helvetica-oblique",
        "helvetica-boldoblique",
        "times-roman",
        "times-bold",
        "times-italic",
        "times-bolditalic",
        "symbol",
        "zapfdingbats",
    }
)


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    Optional[SecretStr],
    Field(
        default=None,
        description="Sensitive credential, redacted from logs",
    ),
]

ContainerName = Annotated[
    str,
    Field(
        default="zzld-form",
        pattern=r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$",
        description="Azure Blob container name (lowercase, 3-63 chars)",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment (prefix ``ZZLD_``).

    Fails fast at startup if storage credentials are missing or the
    configured font cannot render the form's script.
    """

    # ---------------------------------------------------------------------
    # Azure Blob Storage
    # ---------------------------------------------------------------------

    storage_connection_string: SensitiveEnv
    storage_account_name: Optional[str] = Field(
        default=None,
        description="Storage account name, required for managed identity",
    )
    storage_account_url: Optional[str] = Field(
        default=None,
        description=(
            "Explicit blob endpoint. Defaults to "
            "https://<account>.blob.core.windows.net"
        ),
    )
    storage_container_name: ContainerName
    use_managed_identity: bool = Field(
        default=False,
        description="Authenticate with DefaultAzureCredential instead of a key",
    )

    # ---------------------------------------------------------------------
    # Access URLs
    # ---------------------------------------------------------------------

    access_url_ttl_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 7,
        description="Validity of the download URL returned on generation",
    )
    retrieval_url_ttl_hours: int = Field(
        default=1,
        ge=1,
        le=24 * 7,
        description="Validity of the download URL returned on retrieval",
    )

    # ---------------------------------------------------------------------
    # Rendering
    # ---------------------------------------------------------------------

    template_path: Path = Field(
        default=DEFAULT_TEMPLATE_PATH,
        description="Blank declaration form the data is stamped onto",
    )
    font_path: Path = Field(
        default=DEFAULT_FONT_PATH,
        description="TrueType font with Cyrillic coverage, embedded in output",
    )
    font_size: float = Field(default=11.0, gt=4, le=24)
    draw_captions: bool = Field(
        default=True,
        description="Print the form captions; disable for templates that carry their own",
    )

    # ---------------------------------------------------------------------
    # Retry policy
    # ---------------------------------------------------------------------

    retry_count: int = Field(default=3, ge=0, le=10)
    retry_base_delay_ms: int = Field(default=1000, ge=0, le=60_000)

    # ---------------------------------------------------------------------
    # Operational boundaries
    # ---------------------------------------------------------------------

    request_timeout_seconds: float = Field(default=60.0, gt=0, le=600)
    log_level: str = Field(default="INFO")
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="ZZLD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    # ---------------------------------------------------------------------
    # Validators
    # ---------------------------------------------------------------------

    @field_validator("font_path")
    @classmethod
    def font_must_be_truetype(cls, v: Path) -> Path:
        if v.stem.lower() in STANDARD_PDF_FONTS or str(v).lower() in STANDARD_PDF_FONTS:
            raise ValueError(
                f"'{v}' is a standard PDF font without embedded glyphs; "
                "a TrueType font with Cyrillic coverage is required."
            )
        if v.suffix.lower() != ".ttf":
            raise ValueError(f"font_path must point to a .ttf file: {v}")
        return v

    @field_validator("storage_container_name")
    @classmethod
    def no_consecutive_dashes(cls, v: str) -> str:
        if "--" in v:
            raise ValueError("Container names cannot contain consecutive dashes")
        return v

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if level not in allowed:
            raise ValueError(
                f"Unsupported log_level '{v}'. Allowed values: {sorted(allowed)}"
            )
        return level

    @model_validator(mode="after")
    def storage_credentials_present(self) -> "Settings":
        if self.use_managed_identity:
            if not self.storage_account_name:
                raise ValueError(
                    "use_managed_identity is true but "
                    "storage_account_name is not configured."
                )
        elif self.storage_connection_string is None or not (
            self.storage_connection_string.get_secret_value().strip()
        ):
            raise ValueError(
                "storage_connection_string is required unless "
                "use_managed_identity is enabled."
            )
        return self

    @property
    def account_url(self) -> str:
        if self.storage_account_url:
            return self.storage_account_url.rstrip("/")
        return f"https://{self.storage_account_name}.blob.core.windows.net"


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Singleton within the process.
    """
    return Settings()
