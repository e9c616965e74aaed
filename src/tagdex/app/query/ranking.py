"""Turn order directives into a sort plan."""

from __future__ import annotations

import math
import random
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, Sequence

from tagdex.app.services.search_config import RankingConfig

from .metatags import OrderDirective
from .nodes import QueryNode, Range

# Seeds are folded into this range so the seeded sort key stays within 64 bits.
RANDOM_SEED_SPACE = 2**31 - 1

# Order key -> sort fields. ``landscape``/``portrait`` sort the secondary
# dimension against the primary direction.
_ORDER_FIELDS: dict[str, tuple[tuple[str, bool], ...]] = {
    "id": (("id", False),),
    "score": (("score", False),),
    "favcount": (("favorite_count", False),),
    "comment_count": (("comment_count", False),),
    "tagcount": (("tag_count", False),),
    "mpixels": (("megapixels", False),),
    "filesize": (("file_size", False),),
    "duration": (("duration", False),),
    "created": (("created_at", False),),
    "updated": (("updated_at", False),),
    "width": (("width", False),),
    "height": (("height", False),),
    "ratio": (("ratio", False),),
    "landscape": (("width", False), ("height", True)),
    "portrait": (("height", False), ("width", True)),
}

HOT_RANK_FIELD = "hot_rank"
RANDOM_FIELD = "random_key"


@dataclass(frozen=True, slots=True)
class SortKey:
    field: str
    descending: bool = True

    def flipped(self) -> "SortKey":
        return SortKey(self.field, not self.descending)


@dataclass(frozen=True, slots=True)
class RankingPlan:
    """Sort keys, extra filters and cursor eligibility for one request."""

    sort: tuple[SortKey, ...]
    filters: tuple[QueryNode, ...] = ()
    random_seed: int | None = None
    cursor_stable: bool = True
    scoring: "ScoringStrategy | None" = field(default=None, compare=False)

    def reversed(self) -> "RankingPlan":
        return replace(self, sort=tuple(key.flipped() for key in self.sort))


class ScoringStrategy(Protocol):
    """Computes a relevance score stored under a named sort field."""

    name: str

    def score(self, score: int, created_at: float) -> float: ...


@dataclass(frozen=True, slots=True)
class HotRankStrategy:
    """``log_b(score) + (created_at - reference_epoch) / divisor``."""

    reference_epoch: int = 1116892800
    log_base: float = 3.0
    divisor: float = 35000.0
    name: str = HOT_RANK_FIELD

    @classmethod
    def from_config(cls, config: RankingConfig) -> "HotRankStrategy":
        return cls(
            reference_epoch=config.reference_epoch,
            log_base=config.log_base,
            divisor=config.divisor,
        )

    def score(self, score: int, created_at: float) -> float:
        magnitude = math.log(max(int(score or 0), 1), self.log_base)
        return magnitude + (float(created_at or 0) - self.reference_epoch) / self.divisor


class RankingPlanner:
    def __init__(
        self,
        config: RankingConfig,
        *,
        scoring: ScoringStrategy | None = None,
        clock: Callable[[], float] = time.time,
        seed_source: Callable[[], int] | None = None,
    ) -> None:
        self._config = config
        self._scoring = scoring or HotRankStrategy.from_config(config)
        self._clock = clock
        self._seed_source = seed_source or (
            lambda: random.randrange(RANDOM_SEED_SPACE)
        )

    @property
    def scoring(self) -> ScoringStrategy:
        return self._scoring

    def plan(
        self, directives: Sequence[OrderDirective], *, reverse: bool = False
    ) -> RankingPlan:
        """Build the plan for the last directive given, or the default."""

        directive = directives[-1] if directives else None
        plan = self._plan_for(directive)
        return plan.reversed() if reverse else plan

    def _plan_for(self, directive: OrderDirective | None) -> RankingPlan:
        tiebreak = SortKey("id", True)
        if directive is None:
            return RankingPlan(sort=(tiebreak,))

        descending = directive.descending
        if directive.key == "random":
            stable = directive.seed is not None
            seed = directive.seed if stable else self._seed_source()
            seed = int(seed) % RANDOM_SEED_SPACE
            return RankingPlan(
                sort=(SortKey(RANDOM_FIELD, descending), SortKey("id", descending)),
                random_seed=seed,
                cursor_stable=stable,
            )

        if directive.key == "rank":
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            window = now - timedelta(days=self._config.window_days)
            return RankingPlan(
                sort=(
                    SortKey(self._scoring.name, descending),
                    SortKey("id", descending),
                ),
                filters=(Range("score", gt=0), Range("created_at", gte=window)),
                scoring=self._scoring,
            )

        if directive.key == "id":
            return RankingPlan(sort=(SortKey("id", descending),))

        fields = _ORDER_FIELDS.get(directive.key)
        if fields is None:
            return RankingPlan(sort=(tiebreak,))
        keys = tuple(
            SortKey(name, descending != against) for name, against in fields
        )
        return RankingPlan(sort=keys + (SortKey("id", descending),))


__all__ = [
    "HOT_RANK_FIELD",
    "HotRankStrategy",
    "RANDOM_FIELD",
    "RANDOM_SEED_SPACE",
    "RankingPlan",
    "RankingPlanner",
    "ScoringStrategy",
    "SortKey",
]
