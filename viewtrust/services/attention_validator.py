"""
Attention Validator - Genuine-attention scoring for viewing sessions

Turns one session's telemetry into a verdict:
- weighted pass/fail checks -> validation score (0-100)
- validity flag (score >= 70)
- reward multiplier tier
- anomaly tags that hint at synthetic telemetry

Pure: no storage access. Callers supply the recent abuse count and act on
the verdict (record abuse, gate the reward).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from viewtrust.config import settings
from viewtrust.errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewingSession:
    """Telemetry reported by the client for one finished viewing session"""
    attention_score: float
    watch_duration_seconds: float
    total_duration_seconds: float
    frames_with_face_detected: int
    total_frames_sampled: int
    device_fingerprint: Optional[str] = None
    content_id: Optional[str] = None

    @property
    def timing_ratio(self) -> float:
        if self.total_duration_seconds <= 0:
            return 0.0
        return self.watch_duration_seconds / self.total_duration_seconds

    @property
    def watch_percent(self) -> float:
        return self.timing_ratio * 100

    @property
    def face_percent(self) -> float:
        if self.total_frames_sampled <= 0:
            return 0.0
        return self.frames_with_face_detected / self.total_frames_sampled * 100


@dataclass(frozen=True)
class AttentionCheck:
    name: str
    weight: int
    passes: Callable[[ViewingSession], bool]
    reason: Callable[[ViewingSession], str]


@dataclass(frozen=True)
class CheckResult:
    name: str
    weight: int
    passed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class AnomalyRule:
    tag: str
    fires: Callable[[ViewingSession], bool]


# Weighted checks; score = 100 * passed weight / total weight
ATTENTION_CHECKS: Tuple[AttentionCheck, ...] = (
    AttentionCheck(
        name="attention_score",
        weight=30,
        passes=lambda s: s.attention_score >= 60,
        reason=lambda s: f"Attention score ({s.attention_score:g}%) below 60%",
    ),
    AttentionCheck(
        name="watch_duration",
        weight=25,
        passes=lambda s: s.watch_percent >= 70,
        reason=lambda s: f"Watch time ({round(s.watch_percent)}%) below 70%",
    ),
    AttentionCheck(
        name="face_detection",
        weight=25,
        passes=lambda s: s.face_percent >= 50,
        reason=lambda s: f"Face detected in {round(s.face_percent)}% of frames, below 50%",
    ),
    AttentionCheck(
        name="minimum_frames",
        weight=10,
        passes=lambda s: s.total_frames_sampled >= 30,
        reason=lambda s: f"Insufficient tracking data ({s.total_frames_sampled} frames, need 30)",
    ),
    AttentionCheck(
        name="timing_consistency",
        weight=10,
        passes=lambda s: 0.5 <= s.timing_ratio <= 1.5,
        reason=lambda s: "Reported watch time inconsistent with content duration",
    ),
)

ANOMALY_RULES: Tuple[AnomalyRule, ...] = (
    AnomalyRule(
        tag="high_attention_low_watch",
        fires=lambda s: s.attention_score > 95 and s.watch_percent < 80,
    ),
    AnomalyRule(
        tag="perfect_face_detection",
        fires=lambda s: s.face_percent == 100 and s.total_frames_sampled > 100,
    ),
)

# (minimum score, multiplier), highest tier first
MULTIPLIER_TIERS: Tuple[Tuple[float, float], ...] = (
    (90.0, 1.0),
    (80.0, 0.9),
    (70.0, 0.75),
)
FALLBACK_MULTIPLIER = 0.5


@dataclass(frozen=True)
class ValidationVerdict:
    validation_score: float
    is_valid: bool
    reward_multiplier: float
    checks: List[CheckResult]
    suspicious_patterns: FrozenSet[str] = field(default_factory=frozenset)
    requires_abuse_report: bool = False
    abuse_severity: Optional[str] = None
    repeat_offender: bool = False

    @property
    def failed_checks(self) -> List[str]:
        return [c.name for c in self.checks if not c.passed]

    @property
    def reasons(self) -> List[str]:
        return [c.reason for c in self.checks if not c.passed and c.reason]

    def to_response(self) -> Dict[str, Any]:
        """Wire shape returned by POST /attention/validate"""
        return {
            "validated": self.is_valid,
            "validationScore": self.validation_score,
            "rewardMultiplier": self.reward_multiplier,
            "checks": [{"name": c.name, "passed": c.passed} for c in self.checks],
            "reasons": self.reasons,
            "suspiciousPatterns": sorted(self.suspicious_patterns),
        }


def _validate_input(session: ViewingSession, recent_abuse_count: int) -> None:
    fields: Dict[str, str] = {}
    if not 0 <= session.attention_score <= 100:
        fields["attentionScore"] = "must be between 0 and 100"
    if session.watch_duration_seconds < 0:
        fields["watchDuration"] = "must be non-negative"
    if session.total_duration_seconds < 0:
        fields["totalDuration"] = "must be non-negative"
    if session.total_frames_sampled < 0:
        fields["totalFrames"] = "must be non-negative"
    if session.frames_with_face_detected < 0:
        fields["framesDetected"] = "must be non-negative"
    elif session.frames_with_face_detected > max(session.total_frames_sampled, 0):
        fields["framesDetected"] = "cannot exceed totalFrames"
    if recent_abuse_count < 0:
        fields["recentAbuseCount"] = "must be non-negative"
    if fields:
        raise InvalidInputError("Invalid attention telemetry", fields)


def multiplier_for(score: float) -> float:
    for minimum, multiplier in MULTIPLIER_TIERS:
        if score >= minimum:
            return multiplier
    return FALLBACK_MULTIPLIER


def validate(
    session: ViewingSession,
    recent_abuse_count: int = 0,
    checks: Tuple[AttentionCheck, ...] = ATTENTION_CHECKS,
    anomaly_rules: Tuple[AnomalyRule, ...] = ANOMALY_RULES,
) -> ValidationVerdict:
    """
    Score one viewing session.

    Args:
        session: Telemetry for the session
        recent_abuse_count: Abuse events for the user in the trailing window,
            used only to escalate the severity of a required abuse report
        checks: Weighted check table (override to add checks)
        anomaly_rules: Anomaly table

    Returns:
        ValidationVerdict
    """
    _validate_input(session, recent_abuse_count)

    results: List[CheckResult] = []
    for check in checks:
        passed = bool(check.passes(session))
        results.append(CheckResult(
            name=check.name,
            weight=check.weight,
            passed=passed,
            reason=None if passed else check.reason(session),
        ))

    total_weight = sum(c.weight for c in checks)
    passed_weight = sum(r.weight for r in results if r.passed)
    score = round(100.0 * passed_weight / total_weight, 2) if total_weight else 0.0

    is_valid = score >= settings.ATTENTION_VALID_THRESHOLD
    patterns = frozenset(rule.tag for rule in anomaly_rules if rule.fires(session))

    requires_report = (not is_valid) or len(patterns) >= 2
    severity = None
    repeat_offender = False
    if requires_report:
        severity = "high" if score < 50 else "medium"
        if recent_abuse_count >= settings.REPEAT_OFFENDER_THRESHOLD:
            repeat_offender = True
            severity = "high"

    verdict = ValidationVerdict(
        validation_score=score,
        is_valid=is_valid,
        reward_multiplier=multiplier_for(score),
        checks=results,
        suspicious_patterns=patterns,
        requires_abuse_report=requires_report,
        abuse_severity=severity,
        repeat_offender=repeat_offender,
    )

    logger.debug(
        f"Attention verdict: score={score} valid={is_valid} "
        f"failed={verdict.failed_checks} patterns={sorted(patterns)}"
    )
    return verdict
