"""Core module: Settings, Config model, NotificationRequest, and config loading."""

import json
import logging
import tomllib
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings

from mqtt_notify.errors import ConfigError

logger = logging.getLogger(__name__)

NOTIFICATION_SUMMARY = "MQTT Notification"

# Tags used by older config files, e.g. {OnValueEqSay = {value = "on", say = "..."}}
_ACTION_ALIASES = {
    "OnValueEqSay": "EqualsSay",
    "OnValueNeSay": "NotEqualsSay",
}


class Settings(BaseSettings):
    """Process configuration with environment variable support."""

    config: Path | None = None
    log_level: str = "WARNING"
    app_name: str = "mqtt-notify"

    model_config = {"env_prefix": "MQTT_NOTIFY_", "env_file": ".env", "extra": "ignore"}


class EqualsSay(BaseModel):
    """Say something when the message text equals `value`."""

    kind: Literal["EqualsSay"] = "EqualsSay"
    value: str
    say: str

    model_config = {"frozen": True, "extra": "forbid"}

    def is_applicable(self, message_text: str) -> bool:
        return message_text == self.value

    def response_text(self) -> str:
        return self.say


class NotEqualsSay(BaseModel):
    """Say something when the message text differs from `value`."""

    kind: Literal["NotEqualsSay"] = "NotEqualsSay"
    value: str
    say: str

    model_config = {"frozen": True, "extra": "forbid"}

    def is_applicable(self, message_text: str) -> bool:
        return message_text != self.value

    def response_text(self) -> str:
        return self.say


Action = Annotated[Union[EqualsSay, NotEqualsSay], Field(discriminator="kind")]


def _normalize_action(raw: Any) -> Any:
    """Rewrite externally tagged actions and legacy kind names to the `kind` form."""
    if not isinstance(raw, dict):
        return raw
    if "kind" in raw:
        kind = raw["kind"]
        return {**raw, "kind": _ACTION_ALIASES.get(kind, kind)}
    if len(raw) == 1:
        ((tag, fields),) = raw.items()
        if isinstance(fields, dict):
            return {"kind": _ACTION_ALIASES.get(tag, tag), **fields}
    return raw


class Mapping(BaseModel):
    """A topic and the ordered actions used to pick the notification text."""

    topic: str
    actions: tuple[Action, ...] = ()

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _single_action(cls, data: Any) -> Any:
        if isinstance(data, dict) and "action" in data:
            if "actions" in data:
                raise ValueError("use either 'action' or 'actions', not both")
            data = dict(data)
            data["actions"] = [data.pop("action")]
        return data

    @field_validator("actions", mode="before")
    @classmethod
    def _tagged_actions(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [_normalize_action(item) for item in value]
        return value


class Config(BaseModel):
    """Validated bridge configuration. Never mutated after load."""

    mqtt_broker_uri: str
    mqtt_broker_port: int = Field(default=1883, ge=1, le=65535)
    session_expiry_interval: int = Field(default=60, ge=0, le=65535)

    mqtt_username: str | None = None
    mqtt_password: SecretStr | None = None

    notify_on_startup: str | None = None

    ignore_retained: bool = False

    # Sent as the D-Bus INT32 expire_timeout
    message_timeout_millis: int = Field(default=5000, ge=0, le=2**31 - 1)

    mappings: tuple[Mapping, ...] = ()

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="after")
    def _credentials_pair(self) -> "Config":
        if (self.mqtt_username is None) != (self.mqtt_password is None):
            raise ValueError("mqtt_username and mqtt_password must be set together")
        return self

    @property
    def topics(self) -> list[str]:
        """Distinct mapping topics in declaration order."""
        return list(dict.fromkeys(mapping.topic for mapping in self.mappings))


class NotificationRequest(BaseModel):
    """What the notification boundary is asked to display."""

    summary: str = NOTIFICATION_SUMMARY
    body: str
    timeout_ms: int

    model_config = {"frozen": True}


def load_config(path: str | Path) -> Config:
    """Read a TOML (or .json) config file and validate it."""
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    logger.debug(f"Configuration read from {path}")

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(raw)
        else:
            data = tomllib.loads(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    logger.debug(f"Configuration parsed: {len(config.mappings)} mapping(s)")
    return config
