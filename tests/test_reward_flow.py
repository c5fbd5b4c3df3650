"""End-to-end reward issuance: attention gate, trust gate, replay and daily caps."""
import pytest

from viewtrust.config import settings
from viewtrust.db.models import AbuseEvent, RewardLog
from viewtrust.errors import DuplicateRewardError, InvalidInputError, RateLimitExceededError
from viewtrust.services.attention_validator import ViewingSession
from viewtrust.services.ledger_service import ledger_service
from viewtrust.services.reward_service import reward_service
from viewtrust.services.trust_engine import trust_engine
from viewtrust.services.trust_store import trust_store


def attentive(content_id="promo-1", **overrides) -> ViewingSession:
    values = dict(
        attention_score=92,
        watch_duration_seconds=28,
        total_duration_seconds=30,
        frames_with_face_detected=45,
        total_frames_sampled=50,
        device_fingerprint="fp-1",
        content_id=content_id,
    )
    values.update(overrides)
    return ViewingSession(**values)


@pytest.fixture
def user(make_user):
    return make_user("viewer")


class TestIssueReward:
    def test_pays_validated_session(self, db, user):
        outcome = reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        assert outcome.rewarded is True
        assert outcome.amount == 10
        assert outcome.currency == "icoin"
        assert outcome.new_balance == 10
        assert ledger_service.get_balances(db, user)["icoin"] == 10

        log, = db.query(RewardLog).all()
        assert (log.content_id, log.reward_type, log.amount) == ("promo-1", "promo_view", 10)
        assert log.validation_score == 100

    def test_multiplier_reduces_amount(self, db, user):
        session = attentive(attention_score=40)  # score 70 -> x0.75
        outcome = reward_service.issue_attention_reward(db, user, session, base_amount=10)
        assert outcome.amount == 7

    def test_replay_rejected(self, db, user):
        reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        with pytest.raises(DuplicateRewardError) as exc:
            reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        assert exc.value.message == "Reward already claimed for this content"
        assert ledger_service.get_balances(db, user)["icoin"] == 10

    def test_same_content_different_reward_type_allowed(self, db, user):
        reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        outcome = reward_service.issue_attention_reward(
            db, user, attentive(), base_amount=5, reward_type="task_complete"
        )
        assert outcome.rewarded is True

    def test_invalid_session_withheld_and_reported(self, db, user):
        session = attentive(attention_score=10, frames_with_face_detected=3)
        outcome = reward_service.issue_attention_reward(db, user, session, base_amount=10)

        assert outcome.rewarded is False
        assert outcome.reason == "attention_not_validated"
        assert outcome.abuse_reported is True
        assert ledger_service.get_balances(db, user)["icoin"] == 0

        event, = db.query(AbuseEvent).all()
        assert event.abuse_type == "attention_fraud"
        assert event.severity == "high"
        assert event.details["content_id"] == "promo-1"

    def test_invalid_session_paid_reduced_when_enabled(self, db, user, monkeypatch):
        monkeypatch.setattr(settings, "PAY_REDUCED_REWARD_WHEN_INVALID", True)
        session = attentive(attention_score=10, frames_with_face_detected=3)
        outcome = reward_service.issue_attention_reward(db, user, session, base_amount=10)
        assert outcome.rewarded is True
        assert outcome.amount == 5
        assert outcome.abuse_reported is True

    def test_untrusted_device_withheld(self, db, user):
        trust_store.register_device(db, user, "fp-1", trust_score=25)
        db.commit()
        trust_engine.update_trust(db, user, "fp-1", "suspicious_activity")

        outcome = reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        assert outcome.rewarded is False
        assert outcome.reason == "device_not_trusted"
        assert db.query(RewardLog).count() == 0

    def test_session_without_device_not_paid(self, db, user):
        trust_store.register_device(db, user, "fp-1", trust_score=0)
        db.commit()

        outcome = reward_service.issue_attention_reward(
            db, user, attentive(device_fingerprint=None), base_amount=10
        )
        assert outcome.rewarded is False
        assert outcome.reason == "device_required"
        assert ledger_service.get_balances(db, user)["icoin"] == 0
        assert db.query(RewardLog).count() == 0

    def test_trust_gate_ignores_cached_snapshot(self, db, user, monkeypatch):
        cached = {}
        monkeypatch.setattr(trust_engine.cache, "get", lambda u, fp: cached.get((u, fp)))
        monkeypatch.setattr(trust_engine.cache, "set", lambda u, fp, value: cached.__setitem__((u, fp), value))

        trust_engine.update_trust(db, user, "fp-1", "successful_login")
        assert trust_engine.get_trust(db, user, "fp-1").reward_eligible is True

        # lowered by another process; the cached snapshot still says trusted
        device = trust_store.get_device(db, user, "fp-1")
        device.trust_score, device.is_trusted, device.is_flagged = 5, False, True
        db.commit()
        assert trust_engine.get_trust(db, user, "fp-1").reward_eligible is True

        outcome = reward_service.issue_attention_reward(db, user, attentive(), base_amount=10)
        assert outcome.rewarded is False
        assert outcome.reason == "device_not_trusted"

    def test_spin_wheel_booked_as_spin_reward(self, db, user):
        outcome = reward_service.issue_attention_reward(
            db, user, attentive("wheel-1"), base_amount=8, reward_type="spin_wheel"
        )
        assert outcome.rewarded is True
        history = ledger_service.list_transactions(db, user, currency="icoin", limit=1)
        assert history[0]["type"] == "spin_reward"
        assert history[0]["amount"] == 8

    def test_vicoin_reward_type(self, db, user):
        outcome = reward_service.issue_attention_reward(
            db, user, attentive(), base_amount=10, reward_type="referral"
        )
        assert outcome.currency == "vicoin"
        assert ledger_service.get_balances(db, user) == {"icoin": 0, "vicoin": 10}

    @pytest.mark.parametrize("kwargs", [
        {"reward_type": "lottery"},
        {"base_amount": -5},
    ])
    def test_rejects_bad_request(self, db, user, kwargs):
        values = dict(base_amount=10)
        values.update(kwargs)
        with pytest.raises(InvalidInputError):
            reward_service.issue_attention_reward(db, user, attentive(), **values)

    def test_content_id_required(self, db, user):
        with pytest.raises(InvalidInputError) as exc:
            reward_service.issue_attention_reward(db, user, attentive(content_id=None), base_amount=10)
        assert "contentId" in exc.value.fields


class TestDailyCaps:
    def test_clamped_to_remaining_then_refused(self, db, user):
        first = reward_service.issue_attention_reward(db, user, attentive("c1"), base_amount=60)
        second = reward_service.issue_attention_reward(db, user, attentive("c2"), base_amount=60)
        assert (first.amount, second.amount) == (60, 40)

        with pytest.raises(RateLimitExceededError) as exc:
            reward_service.issue_attention_reward(db, user, attentive("c3"), base_amount=60)
        assert exc.value.details == {"limit": 100, "used": 100}
        assert ledger_service.get_balances(db, user)["icoin"] == 100

        usage = reward_service.daily_usage(db, user)
        assert usage["used"]["icoin"] == 100
        assert usage["used"]["promo_views"] == 2

    def test_promo_view_count_limit(self, db, user, monkeypatch):
        monkeypatch.setitem(settings.DAILY_LIMITS, "promo_views", 1)
        reward_service.issue_attention_reward(db, user, attentive("c1"), base_amount=1)
        with pytest.raises(RateLimitExceededError):
            reward_service.issue_attention_reward(db, user, attentive("c2"), base_amount=1)

        # other reward types are not counted as promo views
        outcome = reward_service.issue_attention_reward(
            db, user, attentive("c2"), base_amount=1, reward_type="daily_bonus"
        )
        assert outcome.rewarded is True
