from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class SigningCredential(BaseModel):
    """
    Opaque signing credential reference.

    Supplied by the external credential provider. The pipeline passes it
    through to the sign tool and never generates, persists or logs it.
    Passwords reach the tool through the child environment only.
    """

    keystore_path: Path = Field(
        ...,
        description="Keystore file consumed by the sign tool",
    )

    key_alias: str = Field(
        ...,
        min_length=1,
        description="Alias of the signing key inside the keystore",
    )

    store_password: SecretStr

    key_password: Optional[SecretStr] = Field(
        None,
        description="Key password; falls back to the store password",
    )

    model_config = ConfigDict(frozen=True, extra="forbid")

    def resolved_key_password(self) -> SecretStr:
        return self.key_password or self.store_password
