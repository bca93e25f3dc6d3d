import httpx
import pytest
from conftest import make_settings

from schoolmatch.services.email import ResendEmailChannel, render


def _channel(handler, **overrides):
    settings = make_settings(RESEND_API_KEY="re_test", **overrides)
    return ResendEmailChannel(settings, transport=httpx.MockTransport(handler))


def test_render_escapes_context():
    html = render(
        "email/new_application.html",
        school_name="Lincoln High",
        teacher_name="<script>alert(1)</script>",
        job_title="Math Teacher",
        subjects=["Math"],
        match_score=None,
        preferences_url="http://frontend.test/settings",
        unsubscribe_url="http://frontend.test/unsubscribe",
    )
    assert "&lt;script&gt;" in html
    assert "<script>" not in html
    assert "http://frontend.test/unsubscribe" in html


@pytest.mark.asyncio
async def test_send_posts_to_resend():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "msg_123"})

    result = await _channel(handler).send("ada@test.com", "Hello", "<p>Hi</p>")

    assert result.success
    assert result.message_id == "msg_123"
    request = requests[0]
    assert request.headers["Authorization"] == "Bearer re_test"
    body = request.read()
    assert b'"to":["ada@test.com"]' in body.replace(b" ", b"")


@pytest.mark.asyncio
async def test_error_status_becomes_failed_result():
    def handler(request):
        return httpx.Response(422, text="invalid from address")

    result = await _channel(handler).send("ada@test.com", "Hello", "<p>Hi</p>")

    assert not result.success
    assert result.error == "Email API returned 422: invalid from address"


@pytest.mark.asyncio
async def test_transport_error_becomes_failed_result():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await _channel(handler).send("ada@test.com", "Hello", "<p>Hi</p>")

    assert not result.success
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_missing_api_key_is_a_failed_result():
    def handler(request):
        raise AssertionError("no request expected")

    channel = ResendEmailChannel(make_settings(RESEND_API_KEY=""), transport=httpx.MockTransport(handler))
    result = await channel.send("ada@test.com", "Hello", "<p>Hi</p>")

    assert not result.success
