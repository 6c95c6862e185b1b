"""
Activity classification against per-group thresholds.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .events import HOUR_MS, LiveState, RosterMember, now_ms
from .persistence import PersistenceGateway

logger = logging.getLogger("activitybot.classifier")

DEFAULT_AFK_MARKER = "AFK"


@dataclass(frozen=True)
class ClassifiedUser:
    user_id: str
    display_name: str
    total_ms: int

    @property
    def hours(self) -> float:
        return self.total_ms / HOUR_MS


@dataclass
class Classification:
    """Three buckets for one group, each sorted by total time (descending)."""
    group_name: str
    min_hours: float
    reset_time: Optional[int]
    window: Optional[Tuple[int, int]] = None
    active: List[ClassifiedUser] = field(default_factory=list)
    inactive: List[ClassifiedUser] = field(default_factory=list)
    exempt: List[ClassifiedUser] = field(default_factory=list)

    @property
    def threshold_ms(self) -> int:
        return threshold_ms(self.min_hours)

    def summary(self) -> Dict[str, int]:
        return {"active": len(self.active), "inactive": len(self.inactive), "exempt": len(self.exempt)}


def threshold_ms(min_hours: float) -> int:
    """Hours to whole milliseconds."""
    return int(round(min_hours * HOUR_MS))


def _by_total(users: List[ClassifiedUser]) -> List[ClassifiedUser]:
    # sorted() is stable: equal totals keep roster order
    return sorted(users, key=lambda user: user.total_ms, reverse=True)


class Classifier:
    """
    Partitions a roster into ACTIVE / INACTIVE / EXEMPT.

    Exempt wins over everything: an AFK marker in a group name or in the
    display name, or an unexpired AFK status. Otherwise a member is ACTIVE when
    their total reaches the group's minimum (inclusive).
    """

    def __init__(self, gateway: PersistenceGateway, afk_marker: str = DEFAULT_AFK_MARKER):
        self.gateway = gateway
        self.afk_marker = afk_marker

    def resolve_min_hours(self, group_name: str) -> Tuple[float, Optional[int]]:
        """(min_hours, reset_time); 0 hours when the group has no usable config."""
        config = self.gateway.get_group_config(group_name)
        if config is None:
            logger.warning(f"[Classifier] No config for group {group_name}, using 0 hours")
            return 0.0, None

        try:
            min_hours = float(config.min_hours)
        except (TypeError, ValueError):
            min_hours = math.nan
        if math.isnan(min_hours) or math.isinf(min_hours) or min_hours < 0:
            logger.warning(f"[Classifier] Invalid min_hours {config.min_hours!r} for group {group_name}, using 0 hours")
            min_hours = 0.0

        return min_hours, config.reset_time

    def is_exempt(self, member: RosterMember, afk_user_ids) -> bool:
        if member.user_id in afk_user_ids:
            return True
        if not self.afk_marker:
            return False
        if self.afk_marker in (member.display_name or ""):
            return True
        return any(self.afk_marker in group for group in member.group_names)

    def classify(
        self,
        group_name: str,
        roster: Sequence[RosterMember],
        window: Optional[Tuple[int, int]] = None,
        now: Optional[int] = None,
        live: Optional[Dict[str, LiveState]] = None,
    ) -> Classification:
        """
        Classify a roster.

        Args:
            group_name: Group whose threshold applies
            roster: Members to classify; their order breaks ties
            window: Optional (start, end) range; totals then come from the activity log
            now: Current time
            live: Unflushed state per user (see ActivityAccumulator.snapshot)

        Returns:
            Classification
        """
        now = now if now is not None else now_ms()
        live = live or {}
        roster = list(roster)

        min_hours, reset_time = self.resolve_min_hours(group_name)
        required_ms = threshold_ms(min_hours)
        afk_user_ids = self.gateway.get_afk_user_ids(now)
        totals = self._totals(roster, window, now, live)

        result = Classification(group_name=group_name, min_hours=min_hours, reset_time=reset_time, window=window)
        for member in roster:
            user = ClassifiedUser(member.user_id, member.display_name, totals.get(member.user_id, 0))
            if self.is_exempt(member, afk_user_ids):
                result.exempt.append(user)
            elif user.total_ms >= required_ms:
                result.active.append(user)
            else:
                result.inactive.append(user)

        result.active = _by_total(result.active)
        result.inactive = _by_total(result.inactive)
        result.exempt = _by_total(result.exempt)

        logger.info(
            f"[Classifier] {group_name}: {len(result.active)} active, {len(result.inactive)} inactive, "
            f"{len(result.exempt)} exempt (min {min_hours}h)"
        )
        return result

    def _totals(self, roster, window, now, live) -> Dict[str, int]:
        if window is not None:
            start, end = window
            return {
                member.user_id: self.gateway.sum_activity(
                    member.user_id,
                    start,
                    end,
                    now,
                    live[member.user_id].pending_logs if member.user_id in live else (),
                    live[member.user_id].is_live if member.user_id in live else False,
                )
                for member in roster
            }

        rows = self.gateway.get_user_activities([member.user_id for member in roster])
        totals = {}
        for member in roster:
            row = rows.get(member.user_id)
            stored = (row.total_time_ms or 0) if row is not None else 0
            state = live.get(member.user_id)
            totals[member.user_id] = stored + (state.unflushed_ms if state is not None else 0)
        return totals
