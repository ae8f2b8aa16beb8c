"""
Multi-touch attribution models.

Pure functions: each takes touches ordered oldest → newest and returns new
WeightedTouch values whose weights sum to 1 (or an empty list for no touches).

- FIRST_CLICK: 100% to the first touch (default for new patients)
- LAST_CLICK: 100% to the last touch (default for returning patients)
- LINEAR: split evenly
- TIME_DECAY: exponential decay, 7-day half-life, age measured from "now"
- POSITION: 40% first, 40% last, 20% split across the middle
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from affiliate_attribution.models import AttributionModel, Confidence

TIME_DECAY_HALF_LIFE = timedelta(days=7)

POSITION_ENDPOINT_WEIGHT = 0.4
POSITION_MIDDLE_SHARE = 0.2


@dataclass(frozen=True)
class WeightedTouch:
    touch_id: int
    affiliate_id: Optional[int]
    ref_code: str
    created_at: datetime
    weight: float = 0.0

    def to_dict(self) -> dict:
        return {
            "touch_id": self.touch_id,
            "affiliate_id": self.affiliate_id,
            "ref_code": self.ref_code,
            "created_at": self.created_at.isoformat(),
            "weight": self.weight,
        }


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def apply_first_click(touches: Sequence[WeightedTouch]) -> list[WeightedTouch]:
    return [replace(t, weight=1.0 if i == 0 else 0.0) for i, t in enumerate(touches)]


def apply_last_click(touches: Sequence[WeightedTouch]) -> list[WeightedTouch]:
    last = len(touches) - 1
    return [replace(t, weight=1.0 if i == last else 0.0) for i, t in enumerate(touches)]


def apply_linear(touches: Sequence[WeightedTouch]) -> list[WeightedTouch]:
    if not touches:
        return []
    weight = 1 / len(touches)
    return [replace(t, weight=weight) for t in touches]


def apply_time_decay(
    touches: Sequence[WeightedTouch],
    now: Optional[datetime] = None,
) -> list[WeightedTouch]:
    """weight_i ∝ 0.5 ** (age_i / half_life), normalized."""
    if not touches:
        return []
    now = as_utc(now or datetime.now(timezone.utc))
    half_life = TIME_DECAY_HALF_LIFE.total_seconds()

    raw = [
        0.5 ** ((now - as_utc(t.created_at)).total_seconds() / half_life)
        for t in touches
    ]
    total = sum(raw)
    if total <= 0:
        # Every touch underflowed to zero (ages of many years); split evenly
        return apply_linear(touches)
    return [replace(t, weight=w / total) for t, w in zip(touches, raw)]


def apply_position(touches: Sequence[WeightedTouch]) -> list[WeightedTouch]:
    n = len(touches)
    if n == 0:
        return []
    if n == 1:
        return [replace(touches[0], weight=1.0)]
    if n == 2:
        return [replace(t, weight=0.5) for t in touches]

    middle = POSITION_MIDDLE_SHARE / (n - 2)
    weighted = []
    for i, t in enumerate(touches):
        if i == 0 or i == n - 1:
            weighted.append(replace(t, weight=POSITION_ENDPOINT_WEIGHT))
        else:
            weighted.append(replace(t, weight=middle))
    return weighted


_MODELS: dict[str, Callable[[Sequence[WeightedTouch]], list[WeightedTouch]]] = {
    AttributionModel.FIRST_CLICK.value: apply_first_click,
    AttributionModel.LAST_CLICK.value: apply_last_click,
    AttributionModel.LINEAR.value: apply_linear,
    AttributionModel.POSITION.value: apply_position,
}


def apply_model(
    touches: Sequence[WeightedTouch],
    model: str,
    now: Optional[datetime] = None,
) -> list[WeightedTouch]:
    """Weight touches with the named model. Unknown names use last-click."""
    name = model.value if isinstance(model, AttributionModel) else str(model)
    if name == AttributionModel.TIME_DECAY.value:
        return apply_time_decay(touches, now=now)
    return _MODELS.get(name, apply_last_click)(touches)


def pick_winner(weighted: Sequence[WeightedTouch]) -> Optional[WeightedTouch]:
    """Strictly highest weight wins; on a tie the earliest touch in order is kept."""
    winner: Optional[WeightedTouch] = None
    for touch in weighted:
        if winner is None or touch.weight > winner.weight:
            winner = touch
    return winner


def determine_confidence(has_fingerprint: bool, has_cookie_id: bool, touch_count: int) -> Confidence:
    if touch_count >= 1 and has_fingerprint and has_cookie_id:
        return Confidence.HIGH
    if touch_count >= 1 and (has_fingerprint or has_cookie_id):
        return Confidence.MEDIUM
    return Confidence.LOW
