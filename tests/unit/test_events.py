# ABOUTME: Unit tests for inbound event decoding
# ABOUTME: Tests classification of CI deliveries and /sync bodies into typed events

import pytest

from secret_sync.events import (
    BuildEvent,
    ManualSyncEvent,
    PeerNotification,
    PushEvent,
    UnknownEvent,
    decode_ci_event,
    decode_sync_request,
    trigger_for,
)
from secret_sync.models import SyncTrigger


@pytest.mark.unit
class TestDecodeSyncRequest:
    """Tests for POST /sync body classification."""

    def test_peer_notification(self):
        """Test that a body with changedFile is a peer notification."""
        event = decode_sync_request(
            {
                "source": "laptop-2",
                "deviceId": "laptop-1",
                "changedFile": ".env.local",
                "timestamp": "2024-01-15T10:30:00+00:00",
            }
        )

        assert event == PeerNotification(
            source="laptop-2",
            device_id="laptop-1",
            changed_file=".env.local",
            timestamp="2024-01-15T10:30:00+00:00",
        )
        assert trigger_for(event) == SyncTrigger.PEER

    def test_manual_request(self):
        """Test that {source, deviceId} is a manual sync."""
        event = decode_sync_request({"source": "operator", "deviceId": "laptop-1"})

        assert isinstance(event, ManualSyncEvent)
        assert trigger_for(event) == SyncTrigger.MANUAL

    def test_scheduled_request(self):
        """Test that the daemon's delegated pull keeps its trigger."""
        event = decode_sync_request({"source": "laptop-1", "deviceId": "laptop-1", "trigger": "scheduled"})
        assert trigger_for(event) == SyncTrigger.SCHEDULED

    @pytest.mark.parametrize("payload", [{}, [], "sync", None])
    def test_odd_bodies_are_manual(self, payload):
        """Test that empty or non-object bodies default to a manual sync."""
        assert isinstance(decode_sync_request(payload), ManualSyncEvent)


@pytest.mark.unit
class TestDecodeCiEvent:
    """Tests for CI delivery classification."""

    @pytest.mark.parametrize("action", ["requested", "rerequested"])
    def test_build_requested(self, action):
        """Test that requested builds ask for a sync."""
        event = decode_ci_event(
            "workflow_run",
            {
                "action": action,
                "workflow_run": {"name": "deploy"},
                "repository": {"full_name": "acme/app"},
                "sender": {"login": "octocat"},
            },
        )

        assert isinstance(event, BuildEvent)
        assert event.requests_sync is True
        assert event.workflow == "deploy"
        assert event.repository == "acme/app"
        assert trigger_for(event) == SyncTrigger.WEBHOOK

    def test_build_completed_needs_no_sync(self):
        """Test that other build actions are decoded but do not sync."""
        event = decode_ci_event("check_suite", {"action": "completed"})

        assert isinstance(event, BuildEvent)
        assert event.requests_sync is False

    def test_push_collects_changed_files(self):
        """Test that added and modified paths are collected once each."""
        event = decode_ci_event(
            "push",
            {
                "ref": "refs/heads/main",
                "commits": [
                    {"added": ["config/.env.local"], "modified": ["README.md"]},
                    {"added": [], "modified": ["README.md", "src/app.py"]},
                ],
            },
        )

        assert isinstance(event, PushEvent)
        assert event.changed_files == ("config/.env.local", "README.md", "src/app.py")
        assert event.touched_secret_files([".env.local", "secrets.json"]) == ["config/.env.local"]

    def test_push_without_secret_files(self):
        """Test that a push touching no secret file matches nothing."""
        event = decode_ci_event("push", {"commits": [{"modified": ["README.md"]}]})
        assert event.touched_secret_files([".env.local"]) == []

    @pytest.mark.parametrize("event_type", ["ping", "issues", None])
    def test_unknown_event(self, event_type):
        """Test that anything else is an UnknownEvent."""
        event = decode_ci_event(event_type, {"zen": "Keep it logically awesome."})
        assert event == UnknownEvent(event_type=event_type)

    def test_non_object_payload(self):
        """Test that a non-object payload is unknown even for build types."""
        assert isinstance(decode_ci_event("workflow_run", ["x"]), UnknownEvent)
