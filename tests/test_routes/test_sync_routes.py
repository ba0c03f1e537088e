"""Tests for the sync status, trigger, channel health and alert routes.

Route tests never touch a database: the lock manager, session and
orchestrator dependencies are overridden and service functions patched.
They verify identity headers, status-code mapping and the arguments handed
to the services.
"""

import uuid
from collections.abc import Iterator
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.database import get_session, get_session_factory
from subsync.main import app
from subsync.models import ActivityLevel, HealthStatus, VideoImportMode
from subsync.routes.sync import get_lock_manager, get_orchestrator
from subsync.schemas.sync import SyncProgressData
from subsync.services.quota_manager import QuotaStatus
from subsync.services.sync_lock import LockStatus, SyncLockManager
from subsync.services.sync_orchestrator import SyncOrchestrator, SyncOutcome, SyncRunResult
from tests.support.factories import create_dead_channel

USER_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
HEADERS = {"X-User-Id": str(USER_ID), "X-YouTube-Token": "ya29.token"}
NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def lock_manager() -> AsyncMock:
    return AsyncMock(spec=SyncLockManager)


@pytest.fixture
def orchestrator() -> AsyncMock:
    return AsyncMock(spec=SyncOrchestrator)


@pytest.fixture
def client(
    lock_manager: AsyncMock, orchestrator: AsyncMock, mock_async_session: AsyncMock
) -> Iterator[TestClient]:
    """Test client with every infrastructure dependency overridden."""
    app.dependency_overrides[get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session] = lambda: mock_async_session
    app.dependency_overrides[get_session_factory] = lambda: MagicMock()
    yield TestClient(app)
    app.dependency_overrides.clear()


def quota_status(used: int = 120) -> QuotaStatus:
    return QuotaStatus(
        used=used,
        limit=10000,
        remaining=10000 - used,
        percentage=round(used / 100, 1),
        reset_at=NOW,
        is_warning=False,
        is_critical=False,
        is_exhausted=False,
    )


class TestIdentity:
    def test_missing_user_header_is_401(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/lock")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_malformed_user_id_is_401(self, client: TestClient) -> None:
        response = client.get("/api/v1/sync/lock", headers={"X-User-Id": "not-a-uuid"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"] == "Invalid user id"

    def test_trigger_without_youtube_token_is_401(self, lock_manager: AsyncMock) -> None:
        """
        GIVEN: A real orchestrator dependency chain
        WHEN: Triggering a sync without X-YouTube-Token
        THEN: 401 before any YouTube client is created
        """
        app.dependency_overrides[get_lock_manager] = lambda: lock_manager
        app.dependency_overrides[get_session_factory] = lambda: MagicMock()
        try:
            response = TestClient(app).post(
                "/api/v1/sync/subscriptions", headers={"X-User-Id": str(USER_ID)}
            )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["detail"] == "YouTube account not connected"

    def test_missing_lock_manager_is_503(self) -> None:
        response = TestClient(app).get("/api/v1/sync/lock", headers=HEADERS)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestProgressRoute:
    def test_no_progress(self, client: TestClient) -> None:
        with (
            patch(
                "subsync.routes.sync.get_current_sync_progress", new_callable=AsyncMock
            ) as mock_progress,
            patch("subsync.routes.sync.is_sync_in_progress", new_callable=AsyncMock) as mock_active,
        ):
            mock_progress.return_value = None
            mock_active.return_value = False

            response = client.get("/api/v1/sync/progress", headers=HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"progress": None, "is_active": False, "eta": None}

    def test_active_progress(self, client: TestClient) -> None:
        progress = SyncProgressData(
            sync_id=uuid.uuid4(),
            user_id=USER_ID,
            message="Syncing videos",
            current=1,
            total=10,
            started_at=NOW,
            updated_at=NOW,
        )
        with (
            patch(
                "subsync.routes.sync.get_current_sync_progress", new_callable=AsyncMock
            ) as mock_progress,
            patch("subsync.routes.sync.is_sync_in_progress", new_callable=AsyncMock) as mock_active,
        ):
            mock_progress.return_value = progress
            mock_active.return_value = True

            response = client.get("/api/v1/sync/progress", headers=HEADERS)

        body = response.json()
        assert body["is_active"] is True
        assert body["progress"]["current"] == 1
        assert body["progress"]["total"] == 10
        assert body["eta"] is None


class TestCancelRoute:
    def test_no_running_sync_is_404(self, client: TestClient, lock_manager: AsyncMock) -> None:
        lock_manager.get_status.return_value = LockStatus(has_lock=False)

        response = client.post("/api/v1/sync/cancel", headers=HEADERS)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        lock_manager.schedule_forced_release.assert_not_called()

    def test_cancel_schedules_forced_release(
        self, client: TestClient, lock_manager: AsyncMock
    ) -> None:
        """
        GIVEN: A running sync holding lock L
        WHEN: The user cancels
        THEN: Cancellation is flagged and a forced release of L is scheduled
        """
        lock_id = uuid.uuid4()
        lock_manager.get_status.return_value = LockStatus(has_lock=True, lock_id=lock_id)
        lock_manager.request_cancellation.return_value = True

        response = client.post("/api/v1/sync/cancel", headers=HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True
        lock_manager.request_cancellation.assert_awaited_once_with(USER_ID)
        lock_manager.schedule_forced_release.assert_called_once_with(USER_ID, lock_id, 5)


class TestLockRoutes:
    def test_lock_status(self, client: TestClient, lock_manager: AsyncMock) -> None:
        lock_manager.get_status.return_value = LockStatus(
            has_lock=True, is_expired=True, locked_at=NOW, expires_at=NOW
        )

        response = client.get("/api/v1/sync/lock", headers=HEADERS)

        body = response.json()
        assert body["has_lock"] is True
        assert body["is_expired"] is True
        assert "lock_id" not in body

    @pytest.mark.parametrize(
        ("released", "message"),
        [(True, "Sync lock cleared"), (False, "No sync lock was held")],
    )
    def test_clear_lock(
        self, client: TestClient, lock_manager: AsyncMock, released: bool, message: str
    ) -> None:
        lock_manager.release.return_value = released

        with patch(
            "subsync.routes.sync.mark_active_progress_cancelled", new_callable=AsyncMock
        ) as mock_mark:
            mock_mark.return_value = 1
            response = client.delete("/api/v1/sync/lock", headers=HEADERS)

        assert response.json() == {"success": True, "message": message}
        mock_mark.assert_awaited_once()
        assert mock_mark.call_args.args[1] == USER_ID


class TestQuotaRoute:
    def test_quota_status(self, client: TestClient) -> None:
        with patch("subsync.routes.sync.get_quota_status", new_callable=AsyncMock) as mock_quota:
            mock_quota.return_value = quota_status(120)

            response = client.get("/api/v1/sync/quota", headers=HEADERS)

        body = response.json()
        assert body["used"] == 120
        assert body["remaining"] == 9880
        assert body["percentage"] == 1.2


class TestTriggerRoutes:
    @pytest.mark.parametrize(
        ("outcome", "status_code"),
        [
            (SyncOutcome.COMPLETED, status.HTTP_200_OK),
            (SyncOutcome.CANCELLED, status.HTTP_200_OK),
            (SyncOutcome.BUSY, status.HTTP_409_CONFLICT),
            (SyncOutcome.QUOTA_DENIED, status.HTTP_429_TOO_MANY_REQUESTS),
            (SyncOutcome.NOT_FOUND, status.HTTP_404_NOT_FOUND),
            (SyncOutcome.FAILED, status.HTTP_500_INTERNAL_SERVER_ERROR),
        ],
    )
    def test_outcome_status_codes(
        self,
        client: TestClient,
        orchestrator: AsyncMock,
        outcome: SyncOutcome,
        status_code: int,
    ) -> None:
        orchestrator.sync_subscriptions.return_value = SyncRunResult(
            outcome=outcome, message="done"
        )

        response = client.post("/api/v1/sync/subscriptions", headers=HEADERS)

        assert response.status_code == status_code
        assert response.json()["outcome"] == outcome.value

    def test_quota_denied_includes_status(
        self, client: TestClient, orchestrator: AsyncMock
    ) -> None:
        orchestrator.sync_videos.return_value = SyncRunResult(
            outcome=SyncOutcome.QUOTA_DENIED,
            message="Insufficient quota remaining.",
            quota_status=quota_status(9990),
        )

        response = client.post("/api/v1/sync/videos", json={}, headers=HEADERS)

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json()["quota_status"]["remaining"] == 10

    def test_video_sync_arguments(self, client: TestClient, orchestrator: AsyncMock) -> None:
        channel_id = uuid.uuid4()
        resume_id = uuid.uuid4()
        orchestrator.sync_videos.return_value = SyncRunResult(
            outcome=SyncOutcome.COMPLETED, message="Synced 1 channels, added 4 new videos"
        )

        response = client.post(
            "/api/v1/sync/videos",
            json={
                "channel_ids": [str(channel_id)],
                "import_mode": "all",
                "resume_sync_id": str(resume_id),
            },
            headers=HEADERS,
        )

        assert response.status_code == status.HTTP_200_OK
        orchestrator.sync_videos.assert_awaited_once_with(
            USER_ID,
            channel_ids=[channel_id],
            import_mode=VideoImportMode.ALL,
            limit=None,
            resume_sync_id=resume_id,
        )

    def test_invalid_limit_is_422(self, client: TestClient, orchestrator: AsyncMock) -> None:
        response = client.post("/api/v1/sync/videos", json={"limit": 0}, headers=HEADERS)

        assert response.status_code == 422
        orchestrator.sync_videos.assert_not_awaited()

    def test_add_channel(self, client: TestClient, orchestrator: AsyncMock) -> None:
        orchestrator.add_channel.return_value = SyncRunResult(
            outcome=SyncOutcome.COMPLETED, message="Added Alpha"
        )

        response = client.post(
            "/api/v1/channels", json={"youtube_channel_id": "UCalpha"}, headers=HEADERS
        )

        assert response.json()["message"] == "Added Alpha"
        orchestrator.add_channel.assert_awaited_once_with(
            USER_ID, "UCalpha", import_mode=VideoImportMode.NEW_ONLY, limit=None
        )


class TestChannelHealthRoutes:
    def test_health_summary(self, client: TestClient) -> None:
        channels = [
            create_dead_channel("UCdead", activity_level=ActivityLevel.LOW),
            create_dead_channel(
                "UCsick",
                consecutive_failures=5,
                activity_level=ActivityLevel.MEDIUM,
            ),
        ]
        channels[1].health_status = HealthStatus.UNHEALTHY

        with patch(
            "subsync.routes.sync.get_unhealthy_channels", new_callable=AsyncMock
        ) as mock_unhealthy:
            mock_unhealthy.return_value = channels
            response = client.get("/api/v1/channels/health", headers=HEADERS)

        body = response.json()
        assert body["summary"] == {"warning": 0, "unhealthy": 1, "dead": 1, "total": 2}
        assert [c["youtube_id"] for c in body["channels"]] == ["UCdead", "UCsick"]

    def test_revive_only_own_channels(
        self, client: TestClient, mock_async_session: AsyncSession
    ) -> None:
        """
        GIVEN: One dead channel the user subscribes to and one foreign id
        WHEN: Reviving both
        THEN: Only the user's own channel is passed to the service
        """
        owned = create_dead_channel("UCmine", activity_level=ActivityLevel.LOW)
        foreign_id = uuid.uuid4()

        with (
            patch(
                "subsync.routes.sync.get_unhealthy_channels", new_callable=AsyncMock
            ) as mock_unhealthy,
            patch("subsync.routes.sync.revive_dead_channels", new_callable=AsyncMock) as mock_revive,
        ):
            mock_unhealthy.return_value = [owned]
            mock_revive.return_value = 1

            response = client.post(
                "/api/v1/channels/health/revive",
                json={"channel_ids": [str(owned.id), str(foreign_id)]},
                headers=HEADERS,
            )

        assert response.json() == {"revived": 1}
        mock_revive.assert_awaited_once_with(mock_async_session, [owned.id])


class TestAlertRoutes:
    def test_acknowledge_requires_ids_or_all(self, client: TestClient) -> None:
        response = client.post("/api/v1/alerts/acknowledge", json={}, headers=HEADERS)

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_acknowledge_all(self, client: TestClient, mock_async_session: AsyncSession) -> None:
        with patch("subsync.routes.sync.acknowledge_alerts", new_callable=AsyncMock) as mock_ack:
            mock_ack.return_value = 4

            response = client.post(
                "/api/v1/alerts/acknowledge", json={"all": True}, headers=HEADERS
            )

        assert response.json() == {"acknowledged": 4}
        mock_ack.assert_awaited_once_with(mock_async_session, USER_ID, None)

    def test_acknowledge_specific(
        self, client: TestClient, mock_async_session: AsyncSession
    ) -> None:
        alert_id = uuid.uuid4()
        with patch("subsync.routes.sync.acknowledge_alerts", new_callable=AsyncMock) as mock_ack:
            mock_ack.return_value = 1

            client.post(
                "/api/v1/alerts/acknowledge",
                json={"alert_ids": [str(alert_id)]},
                headers=HEADERS,
            )

        mock_ack.assert_awaited_once_with(mock_async_session, USER_ID, [alert_id])

    def test_list_alerts_empty(self, client: TestClient) -> None:
        with patch(
            "subsync.routes.sync.get_unacknowledged_alerts", new_callable=AsyncMock
        ) as mock_alerts:
            mock_alerts.return_value = []

            response = client.get("/api/v1/alerts", headers=HEADERS)

        assert response.json() == []
