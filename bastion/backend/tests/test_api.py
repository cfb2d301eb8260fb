"""
tests/test_api.py

FastAPI route tests using TestClient (synchronous).
Each test gets a fresh processor and an in-memory verdict repository.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from bastion.backend.api.main import create_app, set_processor, set_repository
from bastion.backend.config import load_settings
from bastion.backend.processor import build_processor
from bastion.backend.storage.database import Database
from bastion.backend.storage.migrations import apply_migrations
from bastion.backend.storage.repository import VerdictRepository

SQLI = {"ip": "203.0.113.9", "uri": "/search?q=' OR 1=1"}
BENIGN = {"ip": "198.51.100.20", "uri": "/index.html"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def client():
    db = Database(":memory:")
    db.init_schema()
    apply_migrations(db)
    repo = VerdictRepository(db)
    processor = build_processor(
        load_settings(RATE_LIMIT_REQUESTS_PER_MINUTE=0), audit_sink=repo,
    )
    set_repository(repo)
    set_processor(processor)

    app = create_app()
    with TestClient(app) as c:
        yield c, processor
    processor.shutdown()
    db.close()


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

def test_health(client):
    c, _ = client
    resp = c.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["rule_set_version"] == 1


# ---------------------------------------------------------------------------
# /api/events
# ---------------------------------------------------------------------------

class TestEvents:

    def test_attack_blocked(self, client):
        c, _ = client
        resp = c.post("/api/events/http", json=SQLI)
        assert resp.status_code == 200
        body = resp.json()
        assert body["action"] == "block"
        assert body["quarantined"] is True
        assert body["matched_rules"] == ["sql_injection"]

    def test_benign_allowed(self, client):
        c, _ = client
        body = c.post("/api/events/http", json=BENIGN).json()
        assert body["action"] == "allow"
        assert body["classification"] == "benign"

    def test_malformed_descriptor_is_a_verdict(self, client):
        c, _ = client
        resp = c.post("/api/events/http", json={"uri": "/"})
        assert resp.status_code == 200
        assert resp.json()["status_code"] == 400

    def test_access_request(self, client):
        c, _ = client
        body = c.post("/api/events/access", json={
            "user_id": "u1",
            "device_id": "d1",
            "resource": "/reports",
            "context": {"geo": "US", "time": 10, "network": "10.0.0.5", "auth": {"method": "mfa"}},
        }).json()
        assert body["action"] == "allow"
        assert body["trust_score"] >= 70

    def test_unknown_kind_rejected(self, client):
        c, _ = client
        assert c.post("/api/events/smtp", json={}).status_code == 422


# ---------------------------------------------------------------------------
# /api/verdicts
# ---------------------------------------------------------------------------

class TestVerdicts:

    def test_list_and_filter(self, client):
        c, _ = client
        c.post("/api/events/http", json=SQLI)
        c.post("/api/events/http", json=BENIGN)

        page = c.get("/api/verdicts").json()
        assert page["total"] == 2
        assert page["has_more"] is False

        blocked = c.get("/api/verdicts", params={"action": "block"}).json()
        assert [v["subject_key"] for v in blocked["items"]] == ["ip:203.0.113.9"]

    def test_get_by_id(self, client):
        c, _ = client
        event_id = c.post("/api/events/http", json=BENIGN).json()["event_id"]
        resp = c.get(f"/api/verdicts/{event_id}")
        assert resp.status_code == 200
        assert resp.json()["event_id"] == event_id

    def test_missing_verdict_404(self, client):
        c, _ = client
        assert c.get("/api/verdicts/nope").status_code == 404

    def test_limit_validated(self, client):
        c, _ = client
        assert c.get("/api/verdicts", params={"limit": 0}).status_code == 422


# ---------------------------------------------------------------------------
# /api/quarantine
# ---------------------------------------------------------------------------

class TestQuarantine:

    def test_manual_quarantine_blocks_subject(self, client):
        c, _ = client
        resp = c.post("/api/quarantine", json={"key": "ip:198.51.100.20", "minutes": 10})
        assert resp.status_code == 201
        assert resp.json()["auto"] is False

        verdict = c.post("/api/events/http", json=BENIGN).json()
        assert verdict["action"] == "block"
        assert verdict["fast_path"] is True

        entries = c.get("/api/quarantine").json()
        assert entries[0]["key"] == "ip:198.51.100.20"
        assert entries[0]["hits"] == 1

    def test_release(self, client):
        c, _ = client
        c.post("/api/quarantine", json={"key": "ip:198.51.100.20"})
        assert c.delete("/api/quarantine/ip:198.51.100.20").status_code == 200
        assert c.get("/api/quarantine").json() == []
        assert c.post("/api/events/http", json=BENIGN).json()["action"] == "allow"

    def test_release_unknown_404(self, client):
        c, _ = client
        assert c.delete("/api/quarantine/ip:192.0.2.1").status_code == 404

    def test_invalid_minutes(self, client):
        c, _ = client
        assert c.post("/api/quarantine", json={"key": "ip:x", "minutes": 0}).status_code == 422


# ---------------------------------------------------------------------------
# /api/rules
# ---------------------------------------------------------------------------

class TestRules:

    def test_list(self, client):
        c, _ = client
        body = c.get("/api/rules").json()
        assert body["version"] == 1
        assert body["source"] == "builtin"
        assert "sql_injection" in [r["id"] for r in body["rules"]]

    def test_add_rule_applies_to_next_event(self, client):
        c, _ = client
        resp = c.post("/api/rules", json={
            "id": "wp_probe",
            "category": "path_traversal",
            "patterns": [r"wp-login\.php"],
            "severity": "high",
        })
        assert resp.status_code == 201
        assert c.get("/api/rules").json()["version"] == 2

        verdict = c.post("/api/events/http", json={"ip": "198.51.100.20", "uri": "/wp-login.php"}).json()
        assert "wp_probe" in verdict["matched_rules"]

    def test_add_invalid_rule(self, client):
        c, _ = client
        resp = c.post("/api/rules", json={
            "id": "broken", "category": "injection", "patterns": ["(unclosed"], "severity": "high",
        })
        assert resp.status_code == 422

    def test_reload(self, client):
        c, _ = client
        body = c.post("/api/rules/reload").json()
        assert body["version"] == 2

    def test_toggle(self, client):
        c, _ = client
        resp = c.put("/api/rules/sql_injection/enabled", params={"enabled": False})
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False
        assert c.put("/api/rules/nope/enabled", params={"enabled": True}).status_code == 404

    def test_dry_run_has_no_side_effects(self, client):
        c, processor = client
        report = c.post("/api/rules/test", json={"cases": [
            {"request": SQLI, "expected_block": True},
            {"request": BENIGN, "expected_block": False},
            {"request": {"uri": "/"}, "expected_block": False},
        ]}).json()
        assert report["total"] == 2
        assert report["accuracy"] == 1.0
        assert report["invalid"][0]["index"] == 2
        assert len(processor.quarantine_store) == 0
        assert c.get("/api/verdicts").json()["total"] == 0


# ---------------------------------------------------------------------------
# /api/intel, /api/config, /api/stats
# ---------------------------------------------------------------------------

class TestIntel:

    def test_status(self, client):
        c, _ = client
        body = c.get("/api/intel/status").json()
        assert body["feed"] == "virustotal"
        assert body["enabled"] is False

    def test_watchlist(self, client):
        c, _ = client
        resp = c.post("/api/intel/watchlist", json={"indicators": [
            {"type": "ip", "value": "198.51.100.7"},
            {"type": "domain", "value": "evil.example"},
        ]})
        assert resp.status_code == 202
        assert resp.json()["queued"] == 2

    def test_unknown_indicator_type(self, client):
        c, _ = client
        resp = c.post("/api/intel/watchlist", json={"indicators": [{"type": "email", "value": "a@b"}]})
        assert resp.status_code == 422


class TestConfig:

    def test_read(self, client):
        c, _ = client
        body = c.get("/api/config").json()
        assert body["block_threshold"] == 70
        assert body["per_event_deadline_ms"] == 200

    def test_update_applies_to_next_event(self, client):
        c, _ = client
        bot = {"ip": "198.51.100.20", "uri": "/", "user_agent": "Googlebot/2.1"}
        assert c.post("/api/events/http", json=bot).json()["action"] == "allow"
        resp = c.put("/api/config", json={"block_threshold": 40})
        assert resp.status_code == 200
        assert resp.json()["block_threshold"] == 40
        assert c.post("/api/events/http", json=bot).json()["action"] == "block"

    def test_invalid_update_keeps_previous(self, client):
        c, _ = client
        resp = c.put("/api/config", json={"suspicious_min_score": 80})
        assert resp.status_code == 422
        assert c.get("/api/config").json()["suspicious_min_score"] == 30


class TestStats:

    def test_summary(self, client):
        c, _ = client
        c.post("/api/events/http", json=SQLI)
        c.post("/api/events/http", json=BENIGN)
        body = c.get("/api/stats").json()
        assert body["total_verdicts"] == 2
        assert body["verdicts_by_action"] == {"allow": 1, "block": 1}
        assert body["pipeline_stats"]["processor"]["processed"] == 2
        assert body["pipeline_stats"]["quarantined"] == 1
