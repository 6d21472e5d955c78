from starlette.requests import Request

from leadfinder.api.routes.discovery import caller_origin


def _request(headers=None, client=("10.1.2.3", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/discovery",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_forwarded_for_first_hop_wins():
    request = _request({"X-Forwarded-For": "8.8.8.8, 10.0.0.1", "X-Real-IP": "1.1.1.1"})

    assert caller_origin(request) == "8.8.8.8"


def test_real_ip_used_without_forwarded_for():
    assert caller_origin(_request({"X-Real-IP": " 1.1.1.1 "})) == "1.1.1.1"


def test_socket_peer_is_last_resort():
    assert caller_origin(_request()) == "10.1.2.3"
    assert caller_origin(_request(client=None)) is None
