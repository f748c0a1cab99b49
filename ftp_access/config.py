# ftp_access/config.py
"""
Configuration management using Pydantic Settings.

`Settings` reads the environment (and an optional .env file) the way the
deployment configures the client; `ConnectionConfig` is the immutable,
per-call connection description the client core works with.
"""
import ssl
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_LIST_COMMANDS: Tuple[str, ...] = ("MLSD", "LIST -a", "LIST")
DEFAULT_PASSIVE_COMMANDS: Tuple[str, ...] = ("EPSV", "PASV")


class SecureMode(str, Enum):
    OFF = "off"
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"


def _coerce_secure(value):
    if isinstance(value, SecureMode):
        return value
    if value is None or value is False:
        return SecureMode.OFF
    if value is True:
        return SecureMode.EXPLICIT
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("", "false", "0", "no", "off"):
            return SecureMode.OFF
        if lowered in ("true", "1", "yes", "explicit"):
            return SecureMode.EXPLICIT
        if lowered == "implicit":
            return SecureMode.IMPLICIT
    raise ValueError(f"Invalid secure mode: {value!r}")


class TLSOptions(BaseModel):
    """TLS settings applied to the control channel and, through it, to data channels."""
    model_config = ConfigDict(frozen=True)

    verify: bool = True
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    # Overrides the host name used for SNI and certificate matching
    server_hostname: Optional[str] = None

    def build_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_file)
        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if self.cert_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        return context


class ConnectionConfig(BaseModel):
    """Connection parameters for one FTP session. Immutable."""
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = Field(21, ge=1, le=65535)
    user: str = "anonymous"
    password: str = "guest"
    secure: SecureMode = SecureMode.OFF
    tls_options: TLSOptions = Field(default_factory=TLSOptions)
    verbose: bool = False
    # Milliseconds; 0 disables timeouts
    timeout: int = Field(30000, ge=0)
    list_commands: Optional[Tuple[str, ...]] = None
    passive_commands: Tuple[str, ...] = DEFAULT_PASSIVE_COMMANDS
    encoding: str = "utf-8"
    strict_listing: bool = False

    @field_validator("secure", mode="before")
    @classmethod
    def _secure_mode(cls, value):
        return _coerce_secure(value)

    @field_validator("list_commands", "passive_commands", mode="before")
    @classmethod
    def _command_list(cls, value):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def is_secure(self) -> bool:
        return self.secure is not SecureMode.OFF

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self.timeout / 1000.0 if self.timeout else None

    @property
    def effective_list_commands(self) -> Tuple[str, ...]:
        return tuple(self.list_commands) if self.list_commands else DEFAULT_LIST_COMMANDS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
    FTP_HOST: str = "localhost"
    FTP_PORT: int = 21
    FTP_USER: str = "anonymous"
    FTP_PASSWORD: str = "guest"
    # false / true / implicit
    FTP_SECURE: Union[bool, str] = False
    FTP_VERBOSE: bool = False
    FTP_TIMEOUT: int = 30000
    FTP_LIST_COMMANDS: Optional[List[str]] = None
    FTP_TLS_VERIFY: bool = True
    FTP_TLS_CA_FILE: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    def connection_config(self, **overrides) -> ConnectionConfig:
        values = {
            "host": self.FTP_HOST,
            "port": self.FTP_PORT,
            "user": self.FTP_USER,
            "password": self.FTP_PASSWORD,
            "secure": self.FTP_SECURE,
            "verbose": self.FTP_VERBOSE,
            "timeout": self.FTP_TIMEOUT,
            "list_commands": self.FTP_LIST_COMMANDS,
            "tls_options": TLSOptions(verify=self.FTP_TLS_VERIFY, ca_file=self.FTP_TLS_CA_FILE),
        }
        values.update(overrides)
        return ConnectionConfig(**values)


settings = Settings()
