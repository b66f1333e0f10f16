"""
Tests for the monitoring endpoints.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from app.config import settings
from app.database import utc_now
from app.models import (
    AuditKind,
    AuditRecord,
    CadenceMode,
    MonitoringRun,
    MonitoringTarget,
    RunStatus,
    RunTrigger,
    User,
)
from conftest import headers_for, make_target, make_user

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


def store_runs(db: Session, target: MonitoringTarget, count: int) -> None:
    base = utc_now() - timedelta(days=count)
    for i in range(count):
        started = base + timedelta(days=i)
        db.add(
            MonitoringRun(
                target_id=target.id,
                trigger=RunTrigger.SCHEDULED,
                run_url=target.default_url,
                status=RunStatus.SUCCESS,
                summary_json={"summary": {"total": i, "by_impact": {"minor": i}}, "issue_ids": []},
                started_at=started,
                finished_at=started,
            )
        )
    db.commit()


class TestActivate:
    """Tests for POST /api/v1/monitoring/activate."""

    def test_requires_paid_scan(self, client: TestClient, auth_headers: dict):
        response = client.post(
            "/api/v1/monitoring/activate", json={"default_url": "https://example.com/"}, headers=auth_headers
        )
        assert response.status_code == 403
        assert response.json()["details"]["reason"] == "monitoring_prerequisite_missing"

    def test_activate_with_url(self, client: TestClient, db: Session, monitoring_user: User):
        response = client.post(
            "/api/v1/monitoring/activate",
            json={"default_url": "HTTPS://Example.com", "profile": "eaa"},
            headers=headers_for(monitoring_user),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["default_url"] == "https://example.com/"
        assert data["profile"] == "eaa"
        assert data["active"] is True
        assert data["cadence_mode"] == "weekly"
        assert data["next_run_at"] is not None

        target = db.query(MonitoringTarget).one()
        assert target.normalized_url == "https://example.com"

    def test_defaults_to_latest_audit(self, client: TestClient, db: Session, monitoring_user: User):
        db.add(
            AuditRecord(
                user_id=monitoring_user.id,
                url="https://example.org/",
                kind=AuditKind.PAID,
                summary={"total": 0},
                top_issues=[],
            )
        )
        db.commit()

        response = client.post("/api/v1/monitoring/activate", json={}, headers=headers_for(monitoring_user))
        assert response.status_code == 200
        assert response.json()["default_url"] == "https://example.org/"

    def test_no_url_available(self, client: TestClient, monitoring_user: User):
        response = client.post("/api/v1/monitoring/activate", json={}, headers=headers_for(monitoring_user))
        assert response.status_code == 400

    def test_rejects_private_url(self, client: TestClient, monitoring_user: User):
        response = client.post(
            "/api/v1/monitoring/activate",
            json={"default_url": "http://localhost:8080/"},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 400
        assert response.json()["details"]["reason"] == "blocked_hostname"

    def test_interval_cadence_is_clamped(self, client: TestClient, monitoring_user: User):
        response = client.post(
            "/api/v1/monitoring/activate",
            json={"default_url": "https://example.com/", "cadence_mode": "interval_days", "cadence_value": 99},
            headers=headers_for(monitoring_user),
        )
        assert response.json()["cadence_mode"] == "interval_days"
        assert response.json()["cadence_value"] == 60

    def test_domain_limit(self, client: TestClient, db: Session, monitoring_user: User):
        make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/")
        headers = headers_for(monitoring_user)

        response = client.post(
            "/api/v1/monitoring/activate", json={"default_url": "https://shop.example.net/"}, headers=headers
        )
        assert response.status_code == 403
        assert response.json()["details"]["reason"] == "domain_limit_reached"
        assert response.json()["details"]["limit"] == 2

        # Re-activating an already counted URL is not a new domain
        response = client.post(
            "/api/v1/monitoring/activate", json={"default_url": "https://example.com/"}, headers=headers
        )
        assert response.status_code == 200

    def test_activation_revives_deleted_target(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user, active=False, deleted_at=utc_now())

        response = client.post(
            "/api/v1/monitoring/activate",
            json={"default_url": "https://example.com/"},
            headers=headers_for(monitoring_user),
        )

        assert response.status_code == 200
        assert response.json()["id"] == str(target.id)
        db.refresh(target)
        assert target.deleted_at is None
        assert target.active is True


class TestConfigAndDelete:
    """Tests for configuration changes and deletion."""

    def test_change_cadence_reschedules(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user, next_run_at=utc_now() + timedelta(days=30))

        response = client.put(
            "/api/v1/monitoring/config",
            json={"target_id": str(target.id), "cadence_mode": "interval_days", "cadence_value": 3},
            headers=headers_for(monitoring_user),
        )

        assert response.status_code == 200
        db.refresh(target)
        assert target.cadence_mode == CadenceMode.INTERVAL_DAYS
        assert target.cadence_value == 3
        assert target.next_run_at.replace(tzinfo=None) < (utc_now() + timedelta(days=4)).replace(tzinfo=None)

    def test_url_collision_is_conflict(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/")

        response = client.put(
            "/api/v1/monitoring/config",
            json={"target_id": str(target.id), "default_url": "https://example.org"},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 409

    def test_deleted_target_url_can_be_reused(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/", active=False, deleted_at=utc_now())

        response = client.put(
            "/api/v1/monitoring/config",
            json={"target_id": str(target.id), "default_url": "https://example.org"},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 200
        db.refresh(target)
        assert target.normalized_url == "https://example.org"

    def test_activation_prefers_live_target_over_deleted_one(
        self, client: TestClient, db: Session, monitoring_user: User
    ):
        make_target(db, monitoring_user, "https://example.org/", active=False, deleted_at=utc_now())
        live = make_target(db, monitoring_user, "https://example.org/")

        response = client.post(
            "/api/v1/monitoring/activate",
            json={"default_url": "https://example.org/"},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 200
        assert response.json()["id"] == str(live.id)

    def test_reactivation_respects_limit(self, client: TestClient, db: Session, monitoring_user: User):
        make_target(db, monitoring_user, "https://example.com/")
        make_target(db, monitoring_user, "https://example.org/")
        paused = make_target(db, monitoring_user, "https://shop.example.net/", active=False)

        response = client.put(
            "/api/v1/monitoring/config",
            json={"target_id": str(paused.id), "active": True},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 403

    def test_other_accounts_target_not_found(self, client: TestClient, db: Session, monitoring_user: User):
        other = make_user(db, "other@example.com", paid_scan_completed=True, monitoring_active=True)
        target = make_target(db, other)

        response = client.put(
            "/api/v1/monitoring/config",
            json={"target_id": str(target.id), "profile": "eaa"},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 404

    def test_delete_keeps_history(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user)
        store_runs(db, target, 2)
        headers = headers_for(monitoring_user)

        response = client.delete(f"/api/v1/monitoring/targets/{target.id}", headers=headers)
        assert response.status_code == 204

        assert client.get("/api/v1/monitoring/targets", headers=headers).json() == []
        history = client.get("/api/v1/monitoring/history", headers=headers).json()
        assert len(history["runs"]) == 2

        response = client.delete(f"/api/v1/monitoring/targets/{target.id}", headers=headers)
        assert response.status_code == 404

    def test_delete_via_post(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user)
        response = client.post(
            "/api/v1/monitoring/delete",
            json={"target_id": str(target.id)},
            headers=headers_for(monitoring_user),
        )
        assert response.status_code == 200
        assert response.json() == {"deleted": True, "target_id": str(target.id)}


class TestStatusAndHistory:
    """Tests for the read-only views."""

    def test_status(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user)
        store_runs(db, target, 1)

        data = client.get("/api/v1/monitoring/status", headers=headers_for(monitoring_user)).json()

        assert data["has_access"] is True
        assert data["entitlement"]["monitoring_tier"] == "basic"
        assert data["entitlement"]["domains_limit"] == 2
        assert data["entitlement"]["has_prerequisite"] is True
        assert data["target"]["id"] == str(target.id)
        assert len(data["targets"]) == 1
        assert data["latest_run"]["status"] == "success"

    def test_status_without_monitoring(self, client: TestClient, auth_headers: dict):
        data = client.get("/api/v1/monitoring/status", headers=auth_headers).json()
        assert data["has_access"] is False
        assert data["target"] is None
        assert data["latest_run"] is None

    def test_history_pagination(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user)
        store_runs(db, target, 3)
        headers = headers_for(monitoring_user)

        first = client.get("/api/v1/monitoring/history?limit=2", headers=headers).json()
        assert first["has_more"] is True
        assert [run["summary"]["total"] for run in first["runs"]] == [2, 1]

        second = client.get("/api/v1/monitoring/history?limit=2&page=2", headers=headers).json()
        assert second["has_more"] is False
        assert [run["summary"]["total"] for run in second["runs"]] == [0]

    def test_history_limit_bound(self, client: TestClient, monitoring_user: User):
        response = client.get("/api/v1/monitoring/history?limit=51", headers=headers_for(monitoring_user))
        assert response.status_code == 400


class TestRunNow:
    """Tests for POST /api/v1/monitoring/run-now."""

    def test_run_now(self, client: TestClient, db: Session, monitoring_user: User, notifier):
        target = make_target(db, monitoring_user)

        response = client.post(
            "/api/v1/monitoring/run-now", json={"target_id": str(target.id)}, headers=headers_for(monitoring_user)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["run"]["trigger"] == "manual"
        assert data["run"]["status"] == "success"
        assert data["run"]["diff"]["total_delta"] == 4
        assert data["notified"] is True
        assert len(notifier.sent) == 1

    def test_run_now_requires_monitoring(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/v1/monitoring/run-now", json={}, headers=auth_headers)
        assert response.status_code == 403


class TestCron:
    """Tests for POST /api/v1/monitoring/cron."""

    @pytest.mark.parametrize("headers", [{}, {"X-Cron-Secret": "wrong"}])
    def test_rejects_bad_secret(self, client: TestClient, headers):
        response = client.post("/api/v1/monitoring/cron", headers=headers)
        assert response.status_code == 401

    def test_unconfigured_secret(self, client: TestClient, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", "")
        response = client.post("/api/v1/monitoring/cron", headers=CRON_HEADERS)
        assert response.status_code == 500

    def test_tick(self, client: TestClient, db: Session, monitoring_user: User):
        target = make_target(db, monitoring_user)
        make_target(db, monitoring_user, "https://example.org/", next_run_at=utc_now() + timedelta(days=2))

        response = client.post("/api/v1/monitoring/cron", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json() == {"due": 1, "processed": 1, "failed": 0, "skipped": 0}
        run = db.query(MonitoringRun).one()
        assert run.target_id == target.id
        assert run.trigger == RunTrigger.SCHEDULED

    def test_empty_tick(self, client: TestClient):
        response = client.post("/api/v1/monitoring/cron", headers=CRON_HEADERS)
        assert response.json() == {"due": 0, "processed": 0, "failed": 0, "skipped": 0}
