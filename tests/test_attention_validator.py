"""Scoring, anomaly tagging and input validation for viewing sessions."""
import pytest
from hypothesis import given, strategies as st

from viewtrust.errors import InvalidInputError
from viewtrust.services.attention_validator import (
    ATTENTION_CHECKS, AttentionCheck, ViewingSession, multiplier_for, validate
)


def make_session(**overrides) -> ViewingSession:
    values = dict(
        attention_score=85,
        watch_duration_seconds=27,
        total_duration_seconds=30,
        frames_with_face_detected=40,
        total_frames_sampled=50,
        device_fingerprint="fp-1",
        content_id="promo-1",
    )
    values.update(overrides)
    return ViewingSession(**values)


@st.composite
def sessions(draw):
    total_frames = draw(st.integers(min_value=0, max_value=500))
    return ViewingSession(
        attention_score=draw(st.floats(min_value=0, max_value=100, allow_nan=False)),
        watch_duration_seconds=draw(st.floats(min_value=0, max_value=600, allow_nan=False)),
        total_duration_seconds=draw(st.floats(min_value=0, max_value=600, allow_nan=False)),
        frames_with_face_detected=draw(st.integers(min_value=0, max_value=total_frames)),
        total_frames_sampled=total_frames,
    )


class TestScoring:
    def test_attentive_session_passes_every_check(self):
        verdict = validate(make_session())
        assert verdict.validation_score == 100
        assert verdict.is_valid is True
        assert verdict.reward_multiplier == 1.0
        assert verdict.failed_checks == []
        assert verdict.requires_abuse_report is False

    @pytest.mark.parametrize("watched,total,ratio", [(27, 30, 0.9), (45, 30, 1.5), (10, 0, 0.0)])
    def test_timing_ratio(self, watched, total, ratio):
        session = make_session(watch_duration_seconds=watched, total_duration_seconds=total)
        assert session.timing_ratio == pytest.approx(ratio)
        assert session.watch_percent == pytest.approx(ratio * 100)

    def test_weights_sum_to_one_hundred(self):
        assert sum(c.weight for c in ATTENTION_CHECKS) == 100

    def test_low_attention_only_loses_its_weight(self):
        verdict = validate(make_session(attention_score=40))
        assert verdict.validation_score == 70
        assert verdict.is_valid is True
        assert verdict.reward_multiplier == 0.75
        assert verdict.failed_checks == ["attention_score"]
        assert "Attention score (40%) below 60%" in verdict.reasons

    def test_invalid_session_requires_high_severity_report(self):
        verdict = validate(make_session(attention_score=20, frames_with_face_detected=5))
        assert verdict.validation_score == 45
        assert verdict.is_valid is False
        assert verdict.reward_multiplier == 0.5
        assert verdict.requires_abuse_report is True
        assert verdict.abuse_severity == "high"

    def test_severity_follows_score(self):
        verdict = validate(make_session(attention_score=20, total_frames_sampled=50,
                                        frames_with_face_detected=40, watch_duration_seconds=10))
        # attention (30) and watch time (25) fail, ratio 0.33 fails timing (10)
        assert verdict.validation_score == 35
        assert verdict.abuse_severity == "high"

        verdict = validate(make_session(attention_score=20, watch_duration_seconds=18))
        # attention (30) and watch time 60% (25) fail
        assert verdict.validation_score == 45

        verdict = validate(make_session(total_frames_sampled=20, frames_with_face_detected=5,
                                        attention_score=90))
        # face 25% (25) and minimum frames (10) fail
        assert verdict.validation_score == 65
        assert verdict.abuse_severity == "medium"

    def test_repeat_offender_escalates_severity(self):
        session = make_session(total_frames_sampled=20, frames_with_face_detected=5)
        assert validate(session, recent_abuse_count=2).abuse_severity == "medium"

        verdict = validate(session, recent_abuse_count=3)
        assert verdict.abuse_severity == "high"
        assert verdict.repeat_offender is True
        assert verdict.suspicious_patterns == frozenset()

    def test_zero_durations_fail_without_dividing_by_zero(self):
        verdict = validate(make_session(
            watch_duration_seconds=0, total_duration_seconds=0,
            frames_with_face_detected=0, total_frames_sampled=0
        ))
        assert set(verdict.failed_checks) == {
            "watch_duration", "face_detection", "minimum_frames", "timing_consistency"
        }
        assert verdict.validation_score == 30

    def test_extra_check_can_be_added_to_table(self):
        checks = ATTENTION_CHECKS + (
            AttentionCheck("content_id", 100, lambda s: bool(s.content_id), lambda s: "missing content"),
        )
        verdict = validate(make_session(content_id=None), checks=checks)
        assert verdict.validation_score == 50
        assert "missing content" in verdict.reasons

    def test_response_shape(self):
        response = validate(make_session()).to_response()
        assert set(response) == {
            "validated", "validationScore", "rewardMultiplier", "checks", "reasons", "suspiciousPatterns"
        }
        assert response["checks"][0] == {"name": "attention_score", "passed": True}


class TestMultiplier:
    @pytest.mark.parametrize("score,expected", [
        (100, 1.0), (90, 1.0), (89.99, 0.9), (80, 0.9), (75, 0.75), (70, 0.75), (69.99, 0.5), (0, 0.5),
    ])
    def test_tiers(self, score, expected):
        assert multiplier_for(score) == expected


class TestAnomalies:
    def test_perfect_face_detection_over_many_frames(self):
        verdict = validate(make_session(frames_with_face_detected=120, total_frames_sampled=120))
        assert "perfect_face_detection" in verdict.suspicious_patterns
        assert verdict.requires_abuse_report is False

    def test_two_patterns_require_report_even_when_valid(self):
        verdict = validate(make_session(
            attention_score=99, watch_duration_seconds=22.5, total_duration_seconds=30,
            frames_with_face_detected=200, total_frames_sampled=200
        ))
        assert verdict.is_valid is True
        assert verdict.suspicious_patterns == {"high_attention_low_watch", "perfect_face_detection"}
        assert verdict.requires_abuse_report is True
        assert verdict.abuse_severity == "medium"

    @given(
        attention=st.floats(min_value=95.01, max_value=100, allow_nan=False),
        total=st.floats(min_value=1, max_value=3600, allow_nan=False),
        ratio=st.floats(min_value=0, max_value=0.79, allow_nan=False),
    )
    def test_high_attention_low_watch_always_tagged(self, attention, total, ratio):
        session = make_session(
            attention_score=attention,
            watch_duration_seconds=total * ratio,
            total_duration_seconds=total,
        )
        assert "high_attention_low_watch" in validate(session).suspicious_patterns

    @given(sessions())
    def test_score_and_multiplier_stay_in_range(self, session):
        verdict = validate(session)
        assert 0 <= verdict.validation_score <= 100
        assert verdict.reward_multiplier in {1.0, 0.9, 0.75, 0.5}
        assert verdict.is_valid == (verdict.validation_score >= 70)
        if not verdict.is_valid:
            assert verdict.requires_abuse_report


class TestInputValidation:
    @pytest.mark.parametrize("overrides,field", [
        ({"attention_score": 101}, "attentionScore"),
        ({"attention_score": -1}, "attentionScore"),
        ({"watch_duration_seconds": -5}, "watchDuration"),
        ({"total_duration_seconds": -1}, "totalDuration"),
        ({"frames_with_face_detected": 60}, "framesDetected"),
        ({"total_frames_sampled": -1, "frames_with_face_detected": 0}, "totalFrames"),
    ])
    def test_rejects_out_of_range_telemetry(self, overrides, field):
        with pytest.raises(InvalidInputError) as exc:
            validate(make_session(**overrides))
        assert field in exc.value.fields

    def test_rejects_negative_abuse_count(self):
        with pytest.raises(InvalidInputError) as exc:
            validate(make_session(), recent_abuse_count=-1)
        assert "recentAbuseCount" in exc.value.fields
