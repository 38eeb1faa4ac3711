import pytest
from fastapi.routing import APIWebSocketRoute
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, patch

from voice_relay.config.settings import RelaySettings
from voice_relay.main import RELAY_PATH, create_app
from voice_relay.models.room import MessageRole
from voice_relay.websocket_manager import WebSocketManager


@pytest.fixture
def websocket_manager(relay_settings, stub_verifier):
    return WebSocketManager(relay_settings, verifier=stub_verifier)


@pytest.fixture
def app(relay_settings, websocket_manager):
    return create_app(relay_settings, websocket_manager)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_health_check(client):
    """Test the health check endpoint returns correct response"""
    response = client.get("/health")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["status"] == "healthy"
    assert response_json["relay_enabled"] is True
    assert response_json["openai_api_key_configured"] is True
    assert response_json["auth_mode"] == "required"
    assert response_json["active_connections"] == 0
    assert response_json["active_rooms"] == 0


def test_health_check_reports_disabled_relay():
    """A missing secret disables the relay without taking the service down"""
    settings = RelaySettings()
    client = TestClient(create_app(settings, WebSocketManager(settings)))

    response_json = client.get("/health").json()
    assert response_json["status"] == "healthy"
    assert response_json["relay_enabled"] is False
    assert response_json["openai_api_key_configured"] is False


def test_root_endpoint(client):
    """Test the root endpoint returns the correct API information"""
    response = client.get("/")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["name"] == "Realtime Voice Relay"
    assert response_json["version"] == "1.0.0"
    assert RELAY_PATH in response_json["endpoints"]
    assert "/health" in response_json["endpoints"]


def test_plain_http_request_to_relay_path(client):
    """A request without the websocket upgrade is a bad request"""
    response = client.get(RELAY_PATH)
    assert response.status_code == 400
    assert response.text == "Expected WebSocket connection"


def test_unknown_room_is_404(client):
    response = client.get("/rooms/nowhere/messages")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_room_messages_limit(client, websocket_manager):
    store = websocket_manager.presence.store
    room = await store.get_or_create_room("standup", creator="user-123")
    for i in range(3):
        await store.append_message(room.id, MessageRole.USER, f"message {i}", author="user-123")

    response = client.get("/rooms/standup/messages", params={"limit": 2})
    assert response.status_code == 200
    assert [m["content"] for m in response.json()["messages"]] == ["message 1", "message 2"]

    assert client.get("/rooms/standup/messages", params={"limit": 0}).status_code == 422


@pytest.mark.asyncio
async def test_websocket_endpoint(app, websocket_manager):
    """Test that websocket endpoint calls the handle_websocket method"""
    with patch.object(websocket_manager, "handle_websocket", new=AsyncMock()) as mock_handle:
        mock_websocket = MagicMock()

        websocket_route = next(
            route for route in app.routes if isinstance(route, APIWebSocketRoute)
        )
        await websocket_route.endpoint(mock_websocket, room="standup")

        mock_handle.assert_awaited_once_with(mock_websocket, room="standup")


def test_app_startup_configuration(app, websocket_manager):
    """Test the app configuration on startup"""
    assert app.title == "Realtime Voice Relay"
    assert app.version == "1.0.0"
    assert app.state.websocket_manager is websocket_manager

    route_paths = [route.path for route in app.routes]
    assert RELAY_PATH in route_paths
    assert "/rooms/{name}/messages" in route_paths
    assert "/health" in route_paths
    assert "/" in route_paths


def test_shutdown_closes_manager(app, websocket_manager):
    with patch.object(websocket_manager, "shutdown", new=AsyncMock()) as mock_shutdown:
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

        mock_shutdown.assert_awaited_once()
