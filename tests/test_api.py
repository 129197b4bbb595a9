import json
from decimal import Decimal

from fastapi import Request

from rewardledger import routes
from rewardledger.auth import hash_password
from rewardledger.config import FaucetConfig
from rewardledger.main import app
from rewardledger.models import User
from rewardledger.routes import client_ip
from rewardledger.services import advertising
from rewardledger.services.faucet import get_faucet_config
from rewardledger.services.treasury import ensure_treasury_account


def _user(session_factory, email="worker@example.com", password="password-123"):
    with session_factory() as s:
        u = User(email=email, password_hash=hash_password(password), role="employee",
                 referral_code=email.split("@")[0].upper(), referral_count=0)
        s.add(u)
        s.commit()
        return u.id


class TestAuth:
    def test_admin_login_sets_session_cookie(self, client):
        resp = client.post("/login", json={"email": "owner@example.com", "password": "owner-pass-123"})
        assert resp.status_code == 200
        assert "session" in resp.cookies
        assert client.get("/session").json()["role"] == "admin"

    def test_bad_admin_password(self, client):
        resp = client.post("/login", json={"email": "owner@example.com", "password": "nope"})
        assert resp.status_code == 401

    def test_routes_require_session(self, client):
        assert client.get("/api/treasury/summary").status_code == 401
        assert client.get("/api/rewards/wallet").status_code == 401

    def test_user_cannot_use_admin_routes(self, client, seeded, user_headers):
        uid = _user(seeded)
        assert client.get("/api/treasury/summary", headers=user_headers(uid)).status_code == 403

    def test_register_grants_signup_and_referral(self, client, seeded):
        referrer = _user(seeded, email="boss@example.com")
        resp = client.post("/api/users/register", json={
            "email": "New.Hire@example.com", "password": "correct-horse", "referral_code": "BOSS",
        })
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["user"]["email"] == "new.hire@example.com"
        assert body["signup_bonus"]["granted"] is True
        assert body["referral_bonus"]["granted"] is True

        login = client.post("/api/users/login", json={"email": "new.hire@example.com", "password": "correct-horse"})
        token = login.json()["token"]
        wallet = client.get("/api/rewards/wallet", headers={"Authorization": f"Bearer {token}"}).json()
        assert Decimal(str(wallet["token_balance"])) == Decimal("500")

        with seeded() as s:
            assert s.get(User, referrer).referral_count == 1

    def test_duplicate_email(self, client, seeded):
        _user(seeded, email="taken@example.com")
        resp = client.post("/api/users/register", json={"email": "taken@example.com", "password": "password-123"})
        assert resp.status_code == 409


class TestTreasuryApi:
    def test_deposit_and_audit(self, client, seeded, admin_headers):
        resp = client.post("/api/treasury/deposit", json={"amount": "50.00"}, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        assert Decimal(str(resp.json()["tokens_purchased"])) == Decimal("5000")
        assert resp.json()["price_source"] == "test"

        summary = client.get("/api/treasury/summary", headers=admin_headers).json()
        assert Decimal(str(summary["stats"]["available_funding"])) == Decimal("1050.00")
        assert summary["price_degraded"] is False

        audit = client.get("/api/treasury/audit", headers=admin_headers).json()
        assert audit["consistent"] is True
        assert audit["transactions"] == 2

        txs = client.get("/api/treasury/transactions", headers=admin_headers).json()
        assert [t["transaction_type"] for t in txs] == ["deposit", "deposit"]

    def test_deposit_without_recorded_price_is_refused(self, client, session_factory, admin_headers):
        with session_factory() as s:
            ensure_treasury_account(s)
        resp = client.post("/api/treasury/deposit", json={"amount": "50.00"}, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json()["price_source"] == "fallback"

        explicit = client.post("/api/treasury/deposit", json={"amount": "50.00", "token_price": "0.01"},
                               headers=admin_headers)
        assert explicit.status_code == 200, explicit.text
        assert explicit.json()["price_source"] == "manual"

    def test_negative_deposit_is_422(self, client, seeded, admin_headers):
        assert client.post("/api/treasury/deposit", json={"amount": "-1"}, headers=admin_headers).status_code == 422

    def test_adjustment_that_overdraws_is_400(self, client, seeded, admin_headers):
        resp = client.post("/api/treasury/adjustment", headers=admin_headers,
                           json={"cash_delta": "-5000", "description": "too much"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_health(self, client, seeded, admin_headers):
        assert client.get("/api/treasury/health", headers=admin_headers).json()["status"] == "healthy"


class TestRewardsApi:
    def test_checkin_once_per_day(self, client, seeded, user_headers):
        uid = _user(seeded)
        first = client.post("/api/rewards/checkin", headers=user_headers(uid))
        assert first.status_code == 200, first.text
        assert first.json()["streak_count"] == 1

        second = client.post("/api/rewards/checkin", headers=user_headers(uid))
        assert second.status_code == 400
        assert second.json()["success"] is False

        status = client.get("/api/rewards/checkin/status", headers=user_headers(uid)).json()
        assert status["checked_in_today"] is True

    def test_cashout_lifecycle(self, client, seeded, user_headers, admin_headers):
        uid = _user(seeded)
        grant = client.post("/api/rewards/job-completion", headers=admin_headers,
                            json={"user_id": uid, "job_id": "J-77", "job_value_usd": "750.00"})
        assert grant.json()["success"] is True  # 250 + 750 tokens

        bank = {"account_number": "99887766", "routing_number": "111000025",
                "account_holder_name": "Sam Rivera", "bank_name": "Credit Union"}
        created = client.post("/api/rewards/cashout", headers=user_headers(uid),
                              json={"token_amount": "40", "bank_details": bank})
        assert created.status_code == 200, created.text
        cashout_id = created.json()["cashout"]["id"]
        assert "bank_details" not in created.json()["cashout"]
        assert created.json()["cashout"]["price_source"] == "test"

        cancelled = client.post(f"/api/rewards/cashouts/{cashout_id}/cancel", headers=user_headers(uid))
        assert cancelled.json()["status"] == "cancelled"

        again = client.patch(f"/api/rewards/cashouts/{cashout_id}/status", headers=admin_headers,
                             json={"status": "processing"})
        assert again.status_code == 409

        wallet = client.get("/api/rewards/wallet", headers=user_headers(uid)).json()
        assert Decimal(str(wallet["token_balance"])) == Decimal("1000")

    def test_duplicate_job_grant_is_409(self, client, seeded, admin_headers):
        uid = _user(seeded)
        payload = {"user_id": uid, "job_id": "J-1", "job_value_usd": "0"}
        assert client.post("/api/rewards/job-completion", headers=admin_headers, json=payload).status_code == 200
        assert client.post("/api/rewards/job-completion", headers=admin_headers, json=payload).status_code == 409


class TestMiningApi:
    def test_start_then_status(self, client, seeded, user_headers):
        uid = _user(seeded)
        started = client.post("/api/mining/start", headers=user_headers(uid)).json()
        assert started["session_id"]

        status = client.get("/api/mining/status", headers=user_headers(uid)).json()
        assert status["session_id"] == started["session_id"]
        assert Decimal(str(status["tokens_per_second"])) == Decimal("0.02")


class TestAdvertisingApi:
    def test_webhook_signature_enforced(self, client, seeded, user_headers, monkeypatch):
        monkeypatch.setenv("COINTRAFFIC_WEBHOOK_SECRET", "ct-secret")
        uid = _user(seeded)
        imp = client.post("/api/advertising/impression", headers=user_headers(uid),
                          json={"placement_id": "cointraffic_video", "network": "cointraffic", "session_id": "s-1"})
        impression_id = imp.json()["impression_id"]
        done = client.post("/api/advertising/completion", headers=user_headers(uid),
                           json={"impression_id": impression_id, "session_id": "s-1"})
        assert done.json()["verified"] is False

        raw = json.dumps({"session_id": "s-1", "impression_id": impression_id}).encode()
        forged = client.post("/api/advertising/webhook/cointraffic", content=raw,
                             headers={"X-Signature": "sha256=" + "a" * 64})
        assert forged.status_code == 403

        good = client.post("/api/advertising/webhook/cointraffic", content=raw,
                           headers={"X-Signature": advertising.sign_payload("ct-secret", raw)})
        assert good.status_code == 200
        assert good.json()["verified"] is True

        replay = client.post("/api/advertising/webhook/cointraffic", content=raw,
                             headers={"X-Signature": advertising.sign_payload("ct-secret", raw)})
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True

    def test_completion_needs_own_impression(self, client, seeded, user_headers):
        owner = _user(seeded, email="viewer@example.com")
        other = _user(seeded, email="intruder@example.com")
        imp = client.post("/api/advertising/impression", headers=user_headers(owner),
                          json={"placement_id": "aads_banner", "network": "aads", "session_id": "s-9"})
        resp = client.post("/api/advertising/completion", headers=user_headers(other),
                           json={"impression_id": imp.json()["impression_id"], "session_id": "s-9"})
        assert resp.status_code == 404


class TestFaucetApi:
    def test_forwarded_for_cannot_dodge_ip_limit(self, client, seeded, user_headers):
        app.dependency_overrides[get_faucet_config] = lambda: FaucetConfig(require_ad_completion=False)
        codes = []
        for i in range(5):
            uid = _user(seeded, email=f"claimer{i}@example.com")
            headers = dict(user_headers(uid), **{"X-Forwarded-For": f"10.9.9.{i}"})
            codes.append(client.post("/api/faucet/claim", headers=headers, json={"currency": "BTC"}).status_code)
        assert codes == [200, 200, 200, 400, 400]


class TestFraudApi:
    def test_admin_flags_and_unflags_ip(self, client, admin_headers):
        flagged = client.post("/api/fraud/suspicious-ips", json={"ip_address": "203.0.113.9"}, headers=admin_headers)
        assert flagged.status_code == 201
        assert client.get("/api/fraud/stats", headers=admin_headers).json()["suspicious_ips"] == ["203.0.113.9"]

        assert client.delete("/api/fraud/suspicious-ips/203.0.113.9", headers=admin_headers).status_code == 200
        assert client.delete("/api/fraud/suspicious-ips/203.0.113.9", headers=admin_headers).status_code == 404

    def test_rejects_bad_address_and_non_admins(self, client, seeded, admin_headers, user_headers):
        bad = client.post("/api/fraud/suspicious-ips", json={"ip_address": "not-an-ip"}, headers=admin_headers)
        assert bad.status_code == 422
        uid = _user(seeded)
        resp = client.post("/api/fraud/suspicious-ips", json={"ip_address": "203.0.113.9"}, headers=user_headers(uid))
        assert resp.status_code == 403


def _scope_request(forwarded=None, peer="198.51.100.7"):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers, "client": (peer, 50000)})


class TestClientAddress:
    def test_forwarded_header_ignored_without_trusted_proxy(self, monkeypatch):
        monkeypatch.setattr(routes, "TRUSTED_PROXY_HOPS", 0)
        assert client_ip(_scope_request("10.9.9.1")) == "198.51.100.7"

    def test_hop_appended_by_trusted_proxy_wins(self, monkeypatch):
        monkeypatch.setattr(routes, "TRUSTED_PROXY_HOPS", 1)
        assert client_ip(_scope_request("10.9.9.1, 203.0.113.50")) == "203.0.113.50"
        assert client_ip(_scope_request()) == "198.51.100.7"

    def test_short_chain_falls_back_to_peer(self, monkeypatch):
        monkeypatch.setattr(routes, "TRUSTED_PROXY_HOPS", 2)
        assert client_ip(_scope_request("203.0.113.50")) == "198.51.100.7"
