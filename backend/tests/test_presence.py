"""
Tests for the presence registry and room naming.
"""
import pytest

from feedrelay.realtime.errors import InvalidPayload
from feedrelay.realtime.presence import Connection, PresenceRegistry
from feedrelay.realtime.rooms import is_private_room, normalize_user_id, room_for, rooms_for


class TestPresenceRegistry:
    """Test presence tracking logic."""

    def setup_method(self):
        self.registry = PresenceRegistry()

    def test_first_connection_comes_online(self):
        came_online = self.registry.register(Connection("sock1", "10"))

        assert came_online is True
        assert self.registry.is_reachable("10")
        assert "10" in self.registry.get_online_users()

    def test_second_tab_does_not_duplicate(self):
        first = self.registry.register(Connection("sock1", "10"))
        second = self.registry.register(Connection("sock2", "10"))

        assert first is True
        assert second is False
        assert self.registry.get_socket_count("10") == 2
        assert self.registry.get_online_users().count("10") == 1

    def test_register_is_idempotent(self):
        conn = Connection("sock1", "10")
        self.registry.register(conn)
        assert self.registry.register(conn) is False
        assert self.registry.get_socket_count("10") == 1

    def test_route_to_returns_every_connection_of_user(self):
        a = Connection("sock1", "10")
        b = Connection("sock2", "10")
        other = Connection("sock3", "20")
        for conn in (a, b, other):
            self.registry.register(conn)

        assert self.registry.route_to("10") == {a, b}
        assert self.registry.route_to(10) == {a, b}

    def test_route_to_unknown_user_is_empty_not_error(self):
        assert self.registry.route_to("nobody") == set()
        assert not self.registry.is_reachable("nobody")

    def test_disconnect_one_socket_stays_online(self):
        self.registry.register(Connection("sock1", "10"))
        self.registry.register(Connection("sock2", "10"))

        result = self.registry.unregister("sock1")

        assert result["went_offline"] is False
        assert self.registry.is_reachable("10")
        assert self.registry.get_socket_count("10") == 1

    def test_disconnect_last_socket_goes_offline(self):
        self.registry.register(Connection("sock1", "10"))

        result = self.registry.unregister("sock1")

        assert result["went_offline"] is True
        assert result["connection"].user_id == "10"
        assert not self.registry.is_reachable("10")
        assert self.registry.get_online_users() == []

    def test_unregister_unknown_is_noop(self):
        assert self.registry.unregister("unknown") is None
        self.registry.register(Connection("sock1", "10"))
        self.registry.unregister("sock1")
        assert self.registry.unregister("sock1") is None

    def test_clear_resets_all_state(self):
        self.registry.register(Connection("sock1", "10"))
        self.registry.register(Connection("sock2", "20"))

        self.registry.clear()

        assert self.registry.get_online_users() == []
        assert self.registry.connection_count() == 0


class TestRooms:

    def test_numeric_and_string_ids_share_a_room(self):
        assert room_for(7) == room_for("7") == "user:7"

    def test_whitespace_is_trimmed(self):
        assert normalize_user_id(" 42 ") == "42"

    @pytest.mark.parametrize("value", [None, "", "   ", True, 3.5, {}])
    def test_invalid_ids_rejected(self, value):
        with pytest.raises(InvalidPayload):
            room_for(value)

    def test_rooms_for_deduplicates(self):
        assert rooms_for([1, "1", 2]) == ["user:1", "user:2"]

    def test_private_room_detection(self):
        assert is_private_room("user:1")
        assert not is_private_room("group:1")

    def test_connection_room(self):
        assert Connection("sock1", "5").room == "user:5"
