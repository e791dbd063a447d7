"""Performance drift evaluation.

Compares the mean live score over the drift window against the champion's
baseline (the score recorded when it was deployed):

    delta   = baseline_score - current_score
    retrain = delta >= drift_threshold   (inclusive, float tolerant)

Only the champion's own observations count: samples tagged with another
version are ignored, and untagged samples recorded before the champion
replaced a predecessor belong to that predecessor.

The evaluator fails open: without enough observations, a champion or a
baseline it never recommends retraining. It has no side effects.

Example:
    >>> evaluator = DriftEvaluator(store, metrics, settings)
    >>> verdict = evaluator.evaluate("content_performance")
    >>> verdict.retrain, verdict.delta
    (True, 0.04)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np

from modelcycle.lifecycle.config import LifecycleSettings
from modelcycle.lifecycle.domain import DriftVerdict, Observation, at_least, strictly_above
from modelcycle.lifecycle.enums import VerdictReason, VersionStatus
from modelcycle.lifecycle.metrics import MetricsGateway
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Baseline:
    champion_version_id: str | None
    baseline_score: float | None
    threshold: float
    window: timedelta
    min_samples: int
    # Untagged observations before this instant belong to the previous champion
    owned_since: datetime | None = None

    def owns(self, observation: Observation) -> bool:
        if observation.version_id is not None:
            return observation.version_id == self.champion_version_id
        return self.owned_since is None or observation.timestamp >= self.owned_since


class DriftEvaluator:
    """Decides whether live performance degraded enough to retrain."""

    def __init__(
        self,
        store: LifecycleStore,
        metrics: MetricsGateway,
        settings: LifecycleSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.metrics = metrics
        self.settings = settings
        self.clock = clock

    def evaluate(
        self,
        family_id: str,
        *,
        window: timedelta | None = None,
        threshold: float | None = None,
        now: datetime | None = None,
    ) -> DriftVerdict:
        """Evaluate drift for one family.

        Args:
            family_id: Family to evaluate
            window: Lookback window (default: family policy)
            threshold: Drift threshold (default: family policy)
            now: Evaluation time (default: clock)

        Returns:
            DriftVerdict with the enumerated reason

        Raises:
            RecordNotFoundError: If the family is not registered
        """
        now = ensure_utc(now or self.clock())
        baseline = self.store.read(lambda uow: self._load_baseline(uow, family_id))

        effective_window = window or baseline.window
        effective_threshold = baseline.threshold if threshold is None else threshold

        observations = [
            o
            for o in self.metrics.recent(family_id, effective_window, now=now)
            if baseline.owns(o)
        ]
        sample_count = len(observations)

        if sample_count < baseline.min_samples:
            verdict = DriftVerdict(
                family_id=family_id,
                retrain=False,
                current_score=None,
                baseline_score=baseline.baseline_score,
                delta=None,
                reason=VerdictReason.INSUFFICIENT_DATA,
                sample_count=sample_count,
                threshold=effective_threshold,
                detail=(
                    f"{sample_count} observations in window, "
                    f"{baseline.min_samples} required"
                ),
            )
            logger.debug("drift_insufficient_data", **_log_fields(verdict))
            return verdict

        current_score = float(np.mean([o.score for o in observations]))

        if baseline.champion_version_id is None:
            return self._no_baseline(
                family_id,
                current_score,
                sample_count,
                effective_threshold,
                VerdictReason.NO_CHAMPION,
                "Family has no deployed champion",
            )

        if baseline.baseline_score is None:
            return self._no_baseline(
                family_id,
                current_score,
                sample_count,
                effective_threshold,
                VerdictReason.NO_BASELINE,
                f"Champion {baseline.champion_version_id} has no recorded score",
            )

        delta = baseline.baseline_score - current_score
        # Improvements (negative delta) never trigger
        retrain = not strictly_above(0.0, delta) and at_least(delta, effective_threshold)

        verdict = DriftVerdict(
            family_id=family_id,
            retrain=retrain,
            current_score=current_score,
            baseline_score=baseline.baseline_score,
            delta=delta,
            reason=VerdictReason.DRIFT_DETECTED if retrain else VerdictReason.WITHIN_THRESHOLD,
            sample_count=sample_count,
            threshold=effective_threshold,
            detail=(
                f"Window mean {current_score:.4f} vs baseline {baseline.baseline_score:.4f} "
                f"(drop {delta:.4f}, threshold {effective_threshold:.4f})"
            ),
        )

        if retrain:
            logger.info("drift_detected", **_log_fields(verdict))
        else:
            logger.debug("drift_within_threshold", **_log_fields(verdict))

        return verdict

    def _load_baseline(self, uow: UnitOfWork, family_id: str) -> _Baseline:
        family = uow.families.require(family_id)
        policy = self.settings.policy_for(family.overrides())
        champion = uow.versions.champion(family)
        owned_since = None
        if champion is not None and champion.deployed_at is not None:
            retired = uow.versions.list_for_family(family_id, [VersionStatus.RETIRED])
            if any(v.id != champion.id for v in retired):
                owned_since = champion.deployed_at
        return _Baseline(
            champion_version_id=champion.id if champion else None,
            baseline_score=champion.score if champion else None,
            threshold=policy.drift_threshold,
            window=policy.drift_window,
            min_samples=policy.min_training_samples,
            owned_since=owned_since,
        )

    def sample_count(self, family_id: str, now: datetime | None = None) -> tuple[int, int]:
        """Observations of any version in the family's window, and the minimum required.

        Raises:
            RecordNotFoundError: If the family is not registered
        """
        now = ensure_utc(now or self.clock())
        baseline = self.store.read(lambda uow: self._load_baseline(uow, family_id))
        observations = self.metrics.recent(family_id, baseline.window, now=now)
        return len(observations), baseline.min_samples

    @staticmethod
    def _no_baseline(
        family_id: str,
        current_score: float,
        sample_count: int,
        threshold: float,
        reason: VerdictReason,
        detail: str,
    ) -> DriftVerdict:
        verdict = DriftVerdict(
            family_id=family_id,
            retrain=False,
            current_score=current_score,
            baseline_score=None,
            delta=None,
            reason=reason,
            sample_count=sample_count,
            threshold=threshold,
            detail=detail,
        )
        logger.debug("drift_no_baseline", **_log_fields(verdict))
        return verdict


def _log_fields(verdict: DriftVerdict) -> dict[str, object]:
    return {
        "family_id": verdict.family_id,
        "reason": verdict.reason.value,
        "sample_count": verdict.sample_count,
        "current_score": verdict.current_score,
        "baseline_score": verdict.baseline_score,
        "delta": verdict.delta,
        "threshold": verdict.threshold,
    }
