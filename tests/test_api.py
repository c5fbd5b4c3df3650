"""HTTP surface: identity, error rendering and the main flows."""
import pytest

API_KEY_HEADERS = {"X-API-Key": "internal-api-key"}

USER = {"X-User-Id": "viewer"}

ATTENTIVE = {
    "attentionScore": 85,
    "watchDuration": 27,
    "totalDuration": 30,
    "framesDetected": 40,
    "totalFrames": 50,
    "deviceFingerprint": "fp-1",
    "contentId": "promo-1",
}


@pytest.fixture
def funded(client):
    assert client.post("/wallet/open", headers=USER).status_code == 200
    r = client.post(
        "/settlements/purchase",
        json={"userId": "viewer", "currency": "icoin", "amount": 1000, "referenceId": "cs_seed"},
        headers=API_KEY_HEADERS,
    )
    assert r.status_code == 200, r.text
    return "viewer"


class TestIdentity:
    def test_missing_user_header(self, client):
        r = client.post("/attention/validate", json=ATTENTIVE)
        assert r.status_code == 401
        assert r.json()["error"] == "Unauthorized"

    def test_internal_endpoint_needs_api_key(self, client):
        r = client.post(
            "/settlements/purchase",
            json={"userId": "viewer", "amount": 10, "referenceId": "x"},
            headers={"X-API-Key": "wrong"},
        )
        assert r.status_code == 401


class TestAttention:
    def test_validate_scenario(self, client):
        r = client.post("/attention/validate", json=ATTENTIVE, headers=USER)
        assert r.status_code == 200
        body = r.json()
        assert body["validated"] is True
        assert body["validationScore"] == 100
        assert body["rewardMultiplier"] == 1.0
        assert body["reasons"] == []
        assert body["suspiciousPatterns"] == []

    def test_validate_rejects_impossible_frames(self, client):
        r = client.post("/attention/validate", json={**ATTENTIVE, "framesDetected": 60}, headers=USER)
        assert r.status_code == 422
        body = r.json()
        assert body["code"] == "invalid_input"
        assert "framesDetected" in body["details"]["fields"]

    def test_validate_rejects_malformed_body(self, client):
        r = client.post("/attention/validate", json={"attentionScore": "high"}, headers=USER)
        assert r.status_code == 422
        assert r.json()["code"] == "invalid_input"

    def test_reward(self, client, funded):
        r = client.post("/attention/reward", json={**ATTENTIVE, "baseAmount": 10}, headers=USER)
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["rewarded"] is True
        assert body["amount"] == 10
        assert body["newBalance"] == 1010

        r = client.post("/attention/reward", json={**ATTENTIVE, "baseAmount": 10}, headers=USER)
        assert r.status_code == 400
        assert r.json()["error"] == "Reward already claimed for this content"


class TestTrust:
    def test_update_and_list(self, client, funded):
        r = client.post(
            "/trust/update",
            json={"deviceFingerprint": "fp-1", "event": "successful_login", "deviceInfo": {"os": "ios"}},
            headers=USER,
        )
        assert r.status_code == 200
        body = r.json()
        assert body["trustScore"] == 52
        assert body["isTrusted"] is True
        assert body["isFlagged"] is False
        assert body["flagReason"] is None

        devices = client.get("/trust/devices", headers=USER).json()["devices"]
        assert [d["fingerprint"] for d in devices] == ["fp-1"]

    def test_abuse_and_activity_history(self, client, funded):
        inattentive = {**ATTENTIVE, "attentionScore": 10, "framesDetected": 3}
        body = client.post("/attention/validate", json=inattentive, headers=USER).json()
        assert body["validated"] is False

        events = client.get("/trust/abuse", headers=USER).json()["events"]
        assert [(e["abuseType"], e["severity"]) for e in events] == [("attention_fraud", "high")]

        activity = client.get("/trust/activity", params={"type": "ledger_mutation"}, headers=USER).json()
        assert [a["details"]["operation"] for a in activity["activity"]] == ["purchase"]

    def test_update_for_unknown_profile(self, client):
        r = client.post(
            "/trust/update",
            json={"deviceFingerprint": "fp-1", "event": "successful_login"},
            headers={"X-User-Id": "stranger"},
        )
        assert r.status_code == 404


class TestWallet:
    def test_convert(self, client, funded):
        r = client.post("/wallet/convert", json={"amount": 500}, headers=USER)
        assert r.status_code == 200
        body = r.json()
        assert (body["spent"], body["received"]) == (500, 50)
        assert (body["newBalanceA"], body["newBalanceB"]) == (500, 50)
        assert body["exchangeRate"] == 10

        balance = client.get("/wallet/balance", headers=USER).json()
        assert balance["balances"] == {"icoin": 500, "vicoin": 50}

        history = client.get("/wallet/transactions", params={"currency": "vicoin"}, headers=USER).json()
        assert [t["type"] for t in history["transactions"]] == ["converted_in"]

    def test_convert_indivisible(self, client, funded):
        r = client.post("/wallet/convert", json={"amount": 250}, headers=USER)
        assert r.status_code == 422
        assert "amount" in r.json()["details"]["fields"]

    def test_convert_insufficient(self, client, funded):
        r = client.post("/wallet/convert", json={"amount": 5000}, headers=USER)
        assert r.status_code == 400
        assert r.json()["error"] == "Insufficient balance"


class TestSettlementsAndPayouts:
    def test_purchase_replay(self, client, funded):
        payload = {"userId": "viewer", "currency": "icoin", "amount": 1000, "referenceId": "cs_seed"}
        r = client.post("/settlements/purchase", json=payload, headers=API_KEY_HEADERS)
        assert r.json()["duplicate"] is True
        assert r.json()["newBalance"] == 1000

    def test_payout_requires_kyc(self, client, funded):
        payout = {"coinType": "icoin", "amount": 1000, "method": "paypal"}
        r = client.post("/payouts", json=payout, headers=USER)
        assert r.status_code == 403
        assert r.json()["code"] == "forbidden"
        assert r.json()["details"]["kyc_status"] == "pending"

        r = client.post("/kyc/status", json={"userId": "viewer", "status": "verified"}, headers=USER)
        assert r.status_code == 401

        r = client.post("/kyc/status", json={"userId": "viewer", "status": "verified"}, headers=API_KEY_HEADERS)
        assert r.json() == {"userId": "viewer", "kycStatus": "verified"}
        assert client.post("/payouts", json=payout, headers=USER).status_code == 200

    def test_payout_lifecycle(self, client, funded):
        client.post("/kyc/status", json={"userId": "viewer", "status": "verified"}, headers=API_KEY_HEADERS)
        r = client.post("/payouts", json={"coinType": "icoin", "amount": 1000, "method": "paypal"}, headers=USER)
        assert r.status_code == 200, r.text
        payout_id = r.json()["id"]

        r = client.post(f"/payouts/{payout_id}/complete", headers=API_KEY_HEADERS)
        assert r.status_code == 409

        assert client.post(f"/payouts/{payout_id}/processing", headers=API_KEY_HEADERS).status_code == 200
        r = client.post(
            f"/payouts/{payout_id}/complete",
            json={"externalReference": "PP-9"},
            headers=API_KEY_HEADERS,
        )
        assert r.json()["status"] == "completed"

        assert client.get("/wallet/balance", headers=USER).json()["balances"]["icoin"] == 0
        assert client.get("/payouts", headers=USER).json()["payouts"][0]["status"] == "completed"

    def test_payout_below_minimum(self, client, funded):
        r = client.post("/payouts", json={"coinType": "vicoin", "amount": 100, "method": "paypal"}, headers=USER)
        assert r.status_code == 422


class TestSystem:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["database"] == "healthy"
        assert body["redis"] == "unhealthy"
