"""Fallback attribution from the postback's coarse source token.

Consulted only when the tracking platform has no conversion for an identifier
after the retry. Tokens are matched exactly (case-insensitive); unknown tokens
are never guessed.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from postback_relay.config import FALLBACK_SOURCES


@dataclass(frozen=True)
class FallbackBinding:
    token: str
    channel_name: str
    channel_id: int


class FallbackResolver:
    def __init__(self, mapping: Mapping[str, Mapping[str, str | int]] | None = None):
        source = mapping if mapping is not None else FALLBACK_SOURCES
        self._bindings: dict[str, FallbackBinding] = {
            token.strip().lower(): FallbackBinding(
                token=token.strip().lower(),
                channel_name=str(binding["channel_name"]),
                channel_id=int(binding["channel_id"]),
            )
            for token, binding in source.items()
        }

    def resolve(self, source_token: str | None) -> FallbackBinding | None:
        if not source_token:
            return None
        return self._bindings.get(source_token.strip().lower())

    @property
    def known_tokens(self) -> list[str]:
        return sorted(self._bindings)

    def channel_ids(self) -> set[int]:
        return {b.channel_id for b in self._bindings.values()}

    def has_mapping_for_channel(self, channel_id: int | None) -> bool:
        return channel_id is not None and channel_id in self.channel_ids()

    def as_dict(self) -> dict[str, dict[str, str | int]]:
        return {
            token: {"channel_name": b.channel_name, "channel_id": b.channel_id}
            for token, b in sorted(self._bindings.items())
        }


__all__ = ["FallbackResolver", "FallbackBinding"]
