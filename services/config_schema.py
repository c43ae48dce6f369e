from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from services.message import Platform


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# ---------------------------------------------------------------------------
# Base for all driver config blocks; unknown keys are a validation error
# ---------------------------------------------------------------------------

class _DriverConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Upper bound in seconds for one outbound send
    timeout: float = Field(default=15.0, gt=0)


# ---------------------------------------------------------------------------
# Bridges
# ---------------------------------------------------------------------------

# Keys of the legacy per-platform object form, e.g. {"chatId": "-100123"}
_LEGACY_ID_KEYS = ("channelId", "channel_id", "chatId", "chat_id", "groupId", "group_id")


def _coerce_destination(v: object) -> object:
    if isinstance(v, dict):
        for key in _LEGACY_ID_KEYS:
            if key in v:
                v = v[key]
                break
        else:
            raise ValueError(f"no destination id among keys {sorted(v)}")
    if isinstance(v, bool):
        raise ValueError("destination id must be a string or integer")
    if isinstance(v, int):
        return str(v)
    if isinstance(v, str):
        return v.strip()
    return v


DestinationId = Annotated[str, BeforeValidator(_coerce_destination)]


class BridgeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    sync_messages:      CoercedBool = Field(default=True, alias="syncMessages")
    max_message_length: int         = Field(default=2000, gt=0, alias="maxMessageLength")


class BridgeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id:        str
    name:      str                         = ""
    enabled:   CoercedBool                 = True
    platforms: dict[Platform, DestinationId]
    settings:  BridgeSettings              = Field(default_factory=BridgeSettings)

    @field_validator("platforms", mode="before")
    @classmethod
    def _normalize_platform_keys(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        out: dict = {}
        for key, value in v.items():
            k = key.strip().lower() if isinstance(key, str) else key
            if k in out:
                raise ValueError(f"platform '{k}' listed more than once")
            out[k] = value
        return out

    @model_validator(mode="after")
    def _check_platform_ids(self) -> BridgeConfig:
        if not self.id.strip():
            raise ValueError("bridge id must not be empty")
        if len(self.platforms) < 2:
            raise ValueError("a bridge needs at least two platforms")
        for platform, dest in self.platforms.items():
            if not dest:
                raise ValueError(f"{platform}: destination id must not be empty")
            if platform == Platform.TELEGRAM and not dest.lstrip("-").isdigit():
                raise ValueError(f"telegram: chat id must be an integer, got {dest!r}")
            if platform == Platform.DISCORD and not dest.isdigit():
                raise ValueError(f"discord: channel id must be a numeric snowflake, got {dest!r}")
        return self


# ---------------------------------------------------------------------------
# Loop guard
# ---------------------------------------------------------------------------

class LoopGuardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # None keeps the built-in fragment list
    name_fragments: list[str] | None        = None
    bot_user_ids:   dict[Platform, list[str]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Top-level application config
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    """Bridge-level keys.  Driver blocks are validated by each driver's model."""
    model_config = ConfigDict(extra="ignore")

    bridges:    list[dict]      = Field(default_factory=list)
    loop_guard: LoopGuardConfig = Field(default_factory=LoopGuardConfig)
