import pytest
import requests

import autods
from autods import AutoDSClient, AutoDSError, resolve_refresh_token
from helpers import Recorder, StubResponse


def token_response(token="access-token"):
    return StubResponse(200, {"id_token": token})


def page(n, start=0):
    return StubResponse(200, {"results": [{"id": start + i, "title": f"P{start + i}"} for i in range(n)]})


def test_get_access_token_posts_refresh_grant(monkeypatch):
    post = Recorder(token_response("abc"))
    monkeypatch.setattr(requests, "post", post)

    client = AutoDSClient("refresh-123")
    assert client.get_access_token() == "abc"

    url, kwargs = post.calls[0]
    assert url == autods.AUTODS_AUTH_URL
    assert kwargs["data"]["grant_type"] == "refresh_token"
    assert kwargs["data"]["refresh_token"] == "refresh-123"


def test_get_access_token_rejects_invalid_refresh_token(monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(StubResponse(400, {"error": "invalid_grant"})))

    with pytest.raises(AutoDSError, match="Invalid AutoDS refresh token"):
        AutoDSClient("bad-token").get_access_token()


def test_missing_refresh_token_raises():
    with pytest.raises(AutoDSError):
        AutoDSClient(None).get_access_token()


def test_fetch_products_follows_pages(monkeypatch):
    post = Recorder(token_response(), page(2), page(1, start=2))
    monkeypatch.setattr(requests, "post", post)

    products = AutoDSClient("refresh-123").fetch_products(limit=2)

    assert [p["id"] for p in products] == [0, 1, 2]
    offsets = [kwargs["json"]["offset"] for url, kwargs in post.calls[1:]]
    assert offsets == [0, 2]
    body = post.calls[1][1]["json"]
    assert body["filters"][0]["value_list"] == [39]
    assert post.calls[1][1]["headers"]["Authorization"] == "Bearer access-token"


def test_fetch_products_retries_rate_limit_then_gives_up(monkeypatch):
    post = Recorder(token_response(), StubResponse(429), StubResponse(429), StubResponse(429), StubResponse(429))
    monkeypatch.setattr(requests, "post", post)

    with pytest.raises(AutoDSError, match="after 3 retries"):
        AutoDSClient("refresh-123").fetch_products()
    # token + first try + 3 retries
    assert len(post.calls) == 5


def test_fetch_products_reauthenticates_on_401(monkeypatch):
    post = Recorder(token_response("first"), StubResponse(401), token_response("second"), page(1))
    monkeypatch.setattr(requests, "post", post)

    client = AutoDSClient("refresh-123")
    products = client.fetch_products()

    assert len(products) == 1
    assert client.access_token == "second"


def test_bulk_update_products_reports_each_result(monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(token_response()))
    monkeypatch.setattr(
        requests, "patch", Recorder(StubResponse(200, {"id": 1, "quantity": 5}), StubResponse(500))
    )

    results = AutoDSClient("refresh-123").bulk_update_products([{"id": 1, "quantity": 5}, {"id": 2, "quantity": 0}])

    assert results[0] == {"id": 1, "success": True, "data": {"id": 1, "quantity": 5}}
    assert results[1]["success"] is False


def test_get_product_raises_on_error(monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(token_response()))
    monkeypatch.setattr(requests, "get", Recorder(StubResponse(404)))

    with pytest.raises(AutoDSError):
        AutoDSClient("refresh-123").get_product(77)


def test_stored_refresh_token_wins_over_environment(db):
    assert resolve_refresh_token() == "env-refresh-token-123"

    db.seed("app_settings", {"key": autods.TOKEN_SETTING_KEY, "value": "db-token-456", "updated_at": "2024-01-01"})
    assert resolve_refresh_token() == "db-token-456"


def test_fetch_products_never_returns_a_partial_catalog(monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(token_response(), page(2), StubResponse(503)))

    with pytest.raises(AutoDSError, match="offset 2: HTTP 503"):
        AutoDSClient("refresh-123").fetch_products(limit=2)


def test_fetch_products_network_error_raises(monkeypatch):
    monkeypatch.setattr(requests, "post", Recorder(token_response(), requests.ConnectionError("reset")))

    with pytest.raises(AutoDSError, match="reset"):
        AutoDSClient("refresh-123").fetch_products()
