import importlib
import json

import pytest
import requests


support = importlib.import_module("tests.support")
http_client = importlib.import_module("src.delivery.http_client")
HttpResponse = http_client.HttpResponse
WebhookHttpClient = http_client.WebhookHttpClient


def test_post_json_sends_bearer_auth_and_json_body():
    transport = support.RecordingTransport()
    client = WebhookHttpClient("s3cret", transport=transport, timeout_seconds=5.0)

    response = client.post_json(
        "https://hooks.example.com/member-registered",
        {"eventKey": "0xabc:0", "amount": "1.000000"},
        headers={"Idempotency-Key": "0xabc:0"},
    )

    assert response.ok is True
    method, url, headers, body, timeout = transport.calls[0]
    assert method == "POST"
    assert url == "https://hooks.example.com/member-registered"
    assert headers["Authorization"] == "Bearer s3cret"
    assert headers["Content-Type"] == "application/json"
    assert headers["Idempotency-Key"] == "0xabc:0"
    assert json.loads(body) == {"eventKey": "0xabc:0", "amount": "1.000000"}
    assert timeout == 5.0


def test_non_2xx_response_is_returned_not_raised():
    transport = support.RecordingTransport([HttpResponse(status_code=503, body=b"", headers={})])
    client = WebhookHttpClient("s3cret", transport=transport)

    response = client.post_json("https://hooks.example.com", {})

    assert response.status_code == 503
    assert response.ok is False


def test_transport_timeout_becomes_http_error():
    transport = support.RecordingTransport([requests.Timeout("read timed out")])
    client = WebhookHttpClient("s3cret", transport=transport, timeout_seconds=2.5)

    with pytest.raises(http_client.HttpError, match="timeout after 2.5s"):
        client.post_json("https://hooks.example.com", {})


def test_connection_failure_becomes_http_error():
    transport = support.RecordingTransport([ConnectionError("refused")])
    client = WebhookHttpClient("s3cret", transport=transport)

    with pytest.raises(http_client.HttpError, match="refused"):
        client.post_json("https://hooks.example.com", {})


def test_secret_is_required():
    with pytest.raises(ValueError):
        WebhookHttpClient("")
