"""Orchestrator driving the real HTTP surface (ASGI in-process) against the fake provider."""

import asyncio

import httpx

from phone_auth.gateway import AuthRequest, HttpBackendGateway
from phone_auth.main import create_app
from phone_auth.models import UseCase
from phone_auth.orchestrator import AuthenticationOrchestrator, OrchestratorConfig, Phase
from phone_auth.provider import COMPLETE_PATH, GET_PHONE_NUMBER_PATH

from .conftest import make_settings, prepare_body
from .test_orchestrator import ScriptedCredentials, VirtualTime

FAST = OrchestratorConfig(poll_interval_ms=10, retry_delay_ms=10)
REQUEST = AuthRequest(use_case=UseCase.GET_PHONE_NUMBER)


def _build_app(tmp_path, fake_provider, registry):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler))
    return create_app(make_settings(tmp_path), http_client=http_client, registry=registry)


def _browser(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


def test_same_device_flow(tmp_path, fake_provider, registry):
    app = _build_app(tmp_path, fake_provider, registry)

    async def scenario():
        async with _browser(app) as browser:
            orch = AuthenticationOrchestrator(HttpBackendGateway(browser), ScriptedCredentials("vp-token"), config=FAST)
            return await orch.start(REQUEST)

    final = asyncio.run(scenario())

    assert final.phase is Phase.COMPLETED
    assert final.result == {"phone_number": "+15550001111"}
    (call,) = fake_provider.calls_to(GET_PHONE_NUMBER_PATH)
    assert call["json"]["credential"] == "vp-token"


def test_provider_rejection_surfaces_code_and_request_id(tmp_path, fake_provider, registry):
    app = _build_app(tmp_path, fake_provider, registry)

    async def scenario():
        async with _browser(app) as browser:
            orch = AuthenticationOrchestrator(HttpBackendGateway(browser), ScriptedCredentials("bad-credential"), config=FAST)
            return await orch.start(REQUEST)

    final = asyncio.run(scenario())

    assert final.phase is Phase.FAILED
    assert final.failure.code == "INVALID_CREDENTIAL"
    assert final.failure.request_id == "req-9"
    assert final.failure.retryable


def test_redirect_flow_completes_in_same_browser(tmp_path, fake_provider, registry):
    fake_provider.prepare_response = prepare_body("link", "sess-link")
    app = _build_app(tmp_path, fake_provider, registry)

    async def scenario():
        async with _browser(app) as browser:
            completions = []

            def land_on_completion_page(session):
                # the carrier redirect comes back to this browser, cookie jar included
                completions.append(
                    asyncio.get_running_loop().create_task(
                        browser.post(
                            "/completion-redirect/complete",
                            json={"session_key": session.session_key, "agg_code": "agg-1"},
                        )
                    )
                )

            orch = AuthenticationOrchestrator(
                HttpBackendGateway(browser),
                ScriptedCredentials(),
                config=FAST,
                present_channel=land_on_completion_page,
            )
            final = await orch.start(REQUEST)
            (completion,) = completions
            return final, await completion

    final, completion = asyncio.run(scenario())

    assert completion.status_code == 204
    assert final.phase is Phase.COMPLETED
    assert final.result == {"phone_number": "+15550001111"}

    (complete_call,) = fake_provider.calls_to(COMPLETE_PATH)
    (process_call,) = fake_provider.calls_to(GET_PHONE_NUMBER_PATH)
    assert process_call["json"]["credential"] == "vp-token-sess-link"
    assert process_call["json"]["fe_code"] == complete_call["json"]["fe_code"]


def test_redirect_completion_from_another_browser_is_rejected(tmp_path, fake_provider, registry):
    fake_provider.prepare_response = prepare_body("link", "sess-link")
    app = _build_app(tmp_path, fake_provider, registry)

    async def scenario():
        async with _browser(app) as browser, _browser(app) as other_device:
            completions = []

            def land_on_other_device(session):
                completions.append(
                    asyncio.get_running_loop().create_task(
                        other_device.post(
                            "/completion-redirect/complete",
                            json={"session_key": session.session_key, "agg_code": "agg-1"},
                        )
                    )
                )

            orch = AuthenticationOrchestrator(
                HttpBackendGateway(browser),
                ScriptedCredentials(),
                config=FAST,
                present_channel=land_on_other_device,
            )
            attempt = asyncio.create_task(orch.start(REQUEST))
            while not completions:
                await asyncio.sleep(0.005)
            rejected = await completions[0]

            # the session never gets approved; the user gives up
            orch.cancel()
            return rejected, await attempt

    rejected, final = asyncio.run(scenario())

    assert rejected.status_code == 403
    assert rejected.json()["error"] == "MISSING_BINDING_COOKIE"
    assert final.phase is Phase.CANCELLED
    assert fake_provider.calls_to(COMPLETE_PATH) == []
    assert fake_provider.calls_to(GET_PHONE_NUMBER_PATH) == []


def test_desktop_flow_times_out_and_session_expires_later(tmp_path, fake_provider, registry, registry_clock):
    fake_provider.prepare_response = prepare_body("desktop", "sess-desk")
    app = _build_app(tmp_path, fake_provider, registry)
    time = VirtualTime()

    async def scenario():
        async with _browser(app) as browser:
            orch = AuthenticationOrchestrator(
                HttpBackendGateway(browser),
                ScriptedCredentials(),
                clock=time.clock,
                sleep=time.sleep,
            )
            return await orch.start(REQUEST)

    final = asyncio.run(scenario())

    assert final.phase is Phase.FAILED
    assert final.failure.code == "POLLING_TIMEOUT"
    # the first pending status widens the budget past the 30 s default
    assert time.now_ms >= OrchestratorConfig().extended_timeout_ms
    assert len(fake_provider.calls_to("/status/sess-desk")) > 1

    # the client gave up, the server entry lives out its own TTL
    assert registry.get("sess-desk") == "https://provider.test/status/sess-desk"
    registry_clock.advance(300)
    assert registry.get("sess-desk") is None
