"""Traffic channel classification (target / ignored / unknown).

Unknown channel ids are never treated as target channels, and always get a
printable placeholder name so message formatting cannot break on them.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from postback_relay.config import TRAFFIC_CHANNELS
from postback_relay.utils import get_logger

logger = get_logger(__name__)


def _coerce_id(channel_id: int | str | None) -> int | None:
    if channel_id is None:
        return None
    if isinstance(channel_id, bool):
        return None
    try:
        return int(str(channel_id).strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class ChannelInfo:
    channel_id: int | None
    name: str
    is_target: bool
    is_ignored: bool


class ChannelClassifier:
    def __init__(
        self,
        target_ids: Iterable[int] | None = None,
        ignored_ids: Iterable[int] | None = None,
        names: Mapping[int, str] | None = None,
    ):
        self.target_ids = frozenset(target_ids if target_ids is not None else TRAFFIC_CHANNELS["target_ids"])  # type: ignore[arg-type]
        self.ignored_ids = frozenset(ignored_ids if ignored_ids is not None else TRAFFIC_CHANNELS["ignored_ids"])  # type: ignore[arg-type]
        self.names = dict(names if names is not None else TRAFFIC_CHANNELS["names"])  # type: ignore[arg-type]
        overlap = self.target_ids & self.ignored_ids
        if overlap:
            raise ValueError(f"Channels both targeted and ignored: {sorted(overlap)}")

    def is_target_channel(self, channel_id: int | str | None) -> bool:
        cid = _coerce_id(channel_id)
        return cid is not None and cid in self.target_ids

    def name(self, channel_id: int | str | None) -> str:
        cid = _coerce_id(channel_id)
        if cid is not None and cid in self.names:
            return self.names[cid]
        logger.debug("Channel id without configured name", channel_id=channel_id)
        return f"Unknown Channel (id={channel_id})"

    def describe(self, channel_id: int | str | None) -> ChannelInfo:
        cid = _coerce_id(channel_id)
        return ChannelInfo(
            channel_id=cid,
            name=self.name(channel_id),
            is_target=self.is_target_channel(cid),
            is_ignored=cid is not None and cid in self.ignored_ids,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "target_ids": sorted(self.target_ids),
            "ignored_ids": sorted(self.ignored_ids),
            "names": {str(k): v for k, v in sorted(self.names.items())},
        }


__all__ = ["ChannelClassifier", "ChannelInfo"]
