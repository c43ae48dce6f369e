"""
Static bridge table.

A bridge groups one destination id per platform; a message posted in any of
them is mirrored to the rest.  The registry is built once at startup and is
read-only afterwards, so it can be shared by concurrent ``route`` calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from pydantic import ValidationError

import services.logger as log
from services.config_schema import BridgeConfig, BridgeSettings
from services.error import ConfigError, raise_and_log
from services.message import Platform

l = log.get_logger()


@dataclass(frozen=True)
class Target:
    """One destination a message must be delivered to."""
    platform: Platform
    destination_id: str
    bridge_id: str


class BridgeRegistry:

    def __init__(self, bridges: Iterable[BridgeConfig]):
        self._bridges: tuple[BridgeConfig, ...] = tuple(bridges)

        seen: set[str] = set()
        for b in self._bridges:
            if b.id in seen:
                raise_and_log(f"Duplicate bridge id '{b.id}'", ConfigError)
            seen.add(b.id)

        # A destination may belong to one enabled bridge only, otherwise
        # routing out of it would differ from routing into it
        claimed: dict[tuple[Platform, str], str] = {}
        for b in self._bridges:
            if not b.enabled:
                continue
            for platform, dest in b.platforms.items():
                owner = claimed.setdefault((platform, dest), b.id)
                if owner != b.id:
                    raise_and_log(
                        f"{platform}:{dest} is claimed by bridges '{owner}' and '{b.id}'",
                        ConfigError,
                    )

        enabled = sum(1 for b in self._bridges if b.enabled)
        l.info(f"Loaded {len(self._bridges)} bridge(s), {enabled} enabled")

    @classmethod
    def from_config(cls, records: Iterable[dict]) -> BridgeRegistry:
        """Validate raw bridge records; any invalid record is fatal."""
        bridges: list[BridgeConfig] = []
        errors: list[str] = []
        for i, raw in enumerate(records):
            try:
                bridges.append(BridgeConfig.model_validate(raw))
            except ValidationError as exc:
                label = raw.get("id", f"#{i}") if isinstance(raw, dict) else f"#{i}"
                errors.append(f"bridge {label}: {exc}")
        if errors:
            raise_and_log("Invalid bridge configuration:\n" + "\n".join(errors), ConfigError)
        return cls(bridges)

    @property
    def bridges(self) -> tuple[BridgeConfig, ...]:
        return self._bridges

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_bridge(self, platform: Platform, destination_id: str) -> BridgeConfig | None:
        for bridge in self._bridges:
            if not bridge.enabled:
                continue
            if bridge.platforms.get(platform) == destination_id:
                return bridge
        return None

    def targets_for(self, source: Platform, destination_id: str) -> list[Target]:
        bridge = self.find_bridge(source, destination_id)
        if bridge is None:
            l.debug(f"No bridge for {source}:{destination_id}")
            return []

        targets = [
            Target(platform=platform, destination_id=dest, bridge_id=bridge.id)
            for platform, dest in bridge.platforms.items()
            if platform != source
        ]
        l.debug(
            f"Bridge '{bridge.id}' resolves {source}:{destination_id} → "
            + ", ".join(f"{t.platform}:{t.destination_id}" for t in targets)
        )
        return targets

    def settings_for(self, platform: Platform, destination_id: str) -> BridgeSettings | None:
        bridge = self.find_bridge(platform, destination_id)
        return bridge.settings if bridge else None

    def summary(self) -> dict:
        return {
            "total_bridges": len(self._bridges),
            "enabled_bridges": sum(1 for b in self._bridges if b.enabled),
            "bridges": [
                {
                    "id": b.id,
                    "name": b.name,
                    "enabled": b.enabled,
                    "platforms": {str(p): dest for p, dest in b.platforms.items()},
                    "sync_messages": b.settings.sync_messages,
                    "max_message_length": b.settings.max_message_length,
                }
                for b in self._bridges
            ],
        }
