"""Configuration: validated role, provider and default settings.

The router consumes an already-validated :class:`Config`. ``load_config``
is the convenience entry point that builds one from a mapping or a file,
interpolating ``${VAR}`` references and filling API keys from the standard
environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
import re
import tomllib
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
import yaml

from agent_router.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

# Provider-type -> API key environment variable.
API_KEY_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "zai": "ZAI_API_KEY",
    "kimi": "KIMI_API_KEY",
    "google": "GEMINI_API_KEY",
}

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class FallbackConfig(BaseModel):
    """Alternate provider/model tried once when the primary fails."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)


class DefaultsConfig(BaseModel):
    """Values applied to every role unless the role overrides them."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)
    timeout_ms: int = Field(default=60_000, gt=0)


class RoleConfig(BaseModel):
    """A named agent persona bound to a provider and model."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    fallback: FallbackConfig | None = None


class ProviderConfig(BaseModel):
    """Credentials and endpoint for one named provider."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    #: Adapter type; defaults to the provider's key in ``Config.providers``.
    type: str | None = None
    api_key: SecretStr | None = None
    base_url: str | None = None
    default_model: str | None = None
    organization: str | None = None
    project: str | None = None
    location: str | None = None
    headers: dict[str, str] | None = None

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace and map empty keys to None."""
        if v is None:
            return None
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            s = v.strip()
            return SecretStr(s) if s else None
        return v

    @field_validator("base_url", mode="before")
    @classmethod
    def normalize_base_url(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.strip().rstrip("/")
            return s or None
        return v

    @property
    def api_key_value(self) -> str | None:
        """The plain API key, when configured."""
        return self.api_key.get_secret_value() if self.api_key else None

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting absent optional fields."""
        data = self.model_dump(exclude_none=True)
        if self.api_key is not None:
            data["api_key"] = self.api_key.get_secret_value()
        return data


class Config(BaseModel):
    """Root configuration: defaults, roles and providers."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "1.0"
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    roles: dict[str, RoleConfig] = Field(default_factory=dict)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_provider_references(self) -> Config:
        """Every role and fallback must name a configured provider."""
        problems: list[str] = []
        for name, role in self.roles.items():
            if role.provider not in self.providers:
                problems.append(
                    f'Role "{name}" references undefined provider "{role.provider}"'
                )
            if role.fallback is not None and role.fallback.provider not in self.providers:
                problems.append(
                    f'Role "{name}" fallback references undefined provider '
                    f'"{role.fallback.provider}"'
                )
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the loadable mapping shape (API keys in plain text)."""
        data = self.model_dump(exclude_none=True, exclude={"providers"})
        data["providers"] = {name: p.to_dict() for name, p in self.providers.items()}
        return data

    def provider_type(self, name: str) -> str:
        """Adapter type for a configured provider name."""
        provider = self.providers.get(name)
        if provider is None or provider.type is None:
            return name
        return provider.type


def interpolate_env(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Replace ``${VAR}`` and ``${VAR:-default}`` in every string of *value*.

    Unset variables without a default become empty strings.
    """
    env = os.environ if environ is None else environ
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: env.get(m.group(1)) or (m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: interpolate_env(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_env(v, env) for v in value]
    return value


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            hint="Pass a mapping or an existing .yaml/.yml/.toml path.",
        )
    try:
        if path.suffix == ".toml":
            with path.open("rb") as f:
                data: Any = tomllib.load(f)
        else:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse configuration file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping at the top level"
        )
    return data


def _fill_api_keys(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    providers = data.get("providers")
    if not isinstance(providers, dict):
        return
    for name, provider in providers.items():
        if not isinstance(provider, dict) or provider.get("api_key"):
            continue
        env_var = API_KEY_ENV_VARS.get(provider.get("type") or name)
        if env_var and environ.get(env_var):
            provider["api_key"] = environ[env_var]


def _format_validation_error(e: ValidationError) -> str:
    lines: list[str] = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "root"
        msg = str(err.get("msg", "validation failed"))
        # Remove "Value error, " prefix if present (Pydantic standard wrapper)
        if msg.startswith("Value error, "):
            msg = msg[13:]
        lines.append(f"  - {loc}: {msg}")
    return "\n".join(lines)


def validate_config(data: Mapping[str, Any]) -> Config:
    """Validate a raw mapping into a :class:`Config`."""
    try:
        return Config.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration:\n{_format_validation_error(e)}",
            hint="Check role provider references and numeric ranges.",
        ) from e


def load_config(
    source: Mapping[str, Any] | str | Path,
    *,
    environ: Mapping[str, str] | None = None,
    use_dotenv: bool = True,
) -> Config:
    """Build a validated :class:`Config` from a mapping or a config file.

    ``${VAR}`` references are interpolated and missing provider API keys are
    resolved from the standard environment variables (``OPENAI_API_KEY``...).
    """
    if use_dotenv and environ is None:
        load_dotenv()
    env = os.environ if environ is None else environ

    raw = _read_file(Path(source)) if isinstance(source, (str, Path)) else dict(source)
    data = interpolate_env(raw, env)
    _fill_api_keys(data, env)
    return validate_config(data)
