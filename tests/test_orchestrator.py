"""
Tests for GenerationOrchestrator.

Covers:
- Success on the first provider and skipping of providers without a key
- Ordered fallback on failure, reported failure and timeout
- Local reconstruction as the unconditional last resort
- Undersized downloads and tiny source images (wire-level, MockTransport)
- At most one running attempt at any progress event
- Cancellation mid-attempt or while the image is still loading
- Corrupt downloads and unexpected adapter errors fail only their attempt
- Aggregate failure when local reconstruction itself fails, undecodable
  source bytes included
"""

import asyncio
import io
import unittest
from unittest.mock import patch

import httpx
import numpy as np
import trimesh
from PIL import Image

from core.generation.adapters import HttpProviderAdapter, LocalReconstructionAdapter
from core.generation.adapters.protocols import PROTOCOLS
from core.generation.base_adapter import JobHandle, ModelOutput, PollStatus, ProviderAdapter, RawModelAsset
from core.generation.cancellation import CancellationToken
from core.generation.orchestrator import (
    AttemptStatus,
    GenerationOrchestrator,
    SessionState,
)
from core.generation.provider_selector import Credentials, PollSchedule, Provider, ProviderSelector
from core.reconstruction import ReconstructionEngine, ReconstructionTuning
from image2mesh.errors import (
    GenerationCancelledError,
    GenerationExhaustedError,
    ProviderReportedFailure,
    ReconstructionError,
)
from image2mesh.source_image import SourceImage


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FAST = PollSchedule(initial_seconds=0.0, step_seconds=0.0, max_seconds=0.0)


def _png(width=40, height=30, noise=True) -> bytes:
    if noise:
        arr = np.random.default_rng(11).integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    else:
        arr = np.full((height, width, 3), 128, dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(arr).save(buffer, format="PNG")
    return buffer.getvalue()


def _model_glb() -> bytes:
    return trimesh.creation.icosphere(subdivisions=3).export(file_type="glb")


def _provider(provider_id, priority, requires_credential=False, timeout=5.0) -> Provider:
    return Provider(
        id=provider_id,
        priority=priority,
        requires_credential=requires_credential,
        timeout_seconds=timeout,
        poll_schedule=FAST,
    )


def _local_adapter() -> LocalReconstructionAdapter:
    return LocalReconstructionAdapter(ReconstructionEngine(ReconstructionTuning(grid_segments=16)))


class ScriptedAdapter(ProviderAdapter):
    """Adapter replaying a fixed script of poll states.

    Each call allocates one tracked buffer so resource accounting can be
    checked from the attempt's scope.
    """

    def __init__(self, provider_id, polls=("completed",), submit_ok=True, fetch_ok=True, poll_hook=None):
        self.provider_id = provider_id
        self.polls = list(polls)
        self.submit_ok = submit_ok
        self.fetch_ok = fetch_ok
        self.poll_hook = poll_hook
        self.calls = []

    async def submit(self, image, credential, context):
        self.calls.append(("submit", credential))
        context.resources.track("upload", bytearray(32))
        if not self.submit_ok:
            context.record_failure(ProviderReportedFailure("rejected", provider_id=self.provider_id))
            return None
        return JobHandle(self.provider_id, "job")

    async def poll(self, job, context):
        self.calls.append(("poll",))
        context.resources.track("status", bytearray(8))
        if self.poll_hook:
            self.poll_hook()
        state = self.polls.pop(0) if self.polls else "running"
        if state == "completed":
            return PollStatus.completed(ModelOutput(url="mem://model"))
        if state == "failed":
            return PollStatus.failed("provider said no")
        if state == "queued":
            return PollStatus.queued()
        await asyncio.sleep(0.005)
        return PollStatus.running()

    async def fetch(self, output, context):
        self.calls.append(("fetch",))
        data = context.resources.track("download", _model_glb())
        if not self.fetch_ok:
            return None
        return RawModelAsset(data=data, format="glb", source_provider_id=self.provider_id)


class _BrokenEngine(ReconstructionEngine):
    def reconstruct(self, image, resources=None):
        raise ReconstructionError("pixels unreadable", provider_id="local")


class _OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.image = SourceImage.from_bytes(_png())
        self.events = []

    def orchestrator(self, adapters, handler=None):
        adapters = dict(adapters)
        adapters.setdefault("local", _local_adapter())
        handler = handler or (lambda request: httpx.Response(500))
        return GenerationOrchestrator(
            adapters=adapters,
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

    def record(self, orchestrator):
        def on_progress(index, provider_id, phase):
            running = orchestrator.session.running_attempts()
            self.assertLessEqual(len(running), 1)
            self.events.append((index, provider_id, phase))

        return on_progress


# ---------------------------------------------------------------------------
# Selection and fallback
# ---------------------------------------------------------------------------

class TestSelection(_OrchestratorTestCase):
    async def test_first_provider_success(self):
        a = ScriptedAdapter("a", polls=("queued", "running", "completed"))
        orch = self.orchestrator({"a": a})
        model = await orch.generate(self.image, [_provider("a", 1)], on_progress=self.record(orch))

        self.assertEqual(model.source_id, "a")
        self.assertEqual(orch.session.state, SessionState.SUCCEEDED)
        self.assertEqual(orch.session.statuses(), [("a", "succeeded")])
        self.assertEqual([c[0] for c in a.calls], ["submit", "poll", "poll", "poll", "fetch"])
        self.assertAlmostEqual(float(max(model.extents)), 2.5, places=5)

    async def test_skip_provider_without_key(self):
        a = ScriptedAdapter("a")
        b = ScriptedAdapter("b")
        orch = self.orchestrator({"a": a, "b": b})
        queue = [_provider("a", 1, requires_credential=True), _provider("b", 2)]
        model = await orch.generate(self.image, queue, Credentials(), on_progress=self.record(orch))

        self.assertEqual(orch.session.statuses(), [("a", "skipped"), ("b", "succeeded")])
        self.assertEqual(model.source_id, "b")
        self.assertEqual(a.calls, [])
        self.assertIn((0, "a", "skipped"), self.events)

    async def test_credential_passed_when_configured(self):
        a = ScriptedAdapter("a")
        orch = self.orchestrator({"a": a})
        queue = [_provider("a", 1, requires_credential=True)]
        await orch.generate(self.image, queue, Credentials({"a": "key-a"}))
        self.assertEqual(a.calls[0], ("submit", "key-a"))

    async def test_fallback_in_order(self):
        a = ScriptedAdapter("a", polls=("failed",))
        b = ScriptedAdapter("b", submit_ok=False)
        c = ScriptedAdapter("c", fetch_ok=False)
        d = ScriptedAdapter("d")
        orch = self.orchestrator({"a": a, "b": b, "c": c, "d": d})
        queue = [_provider("c", 3), _provider("a", 1), _provider("d", 4), _provider("b", 2)]
        model = await orch.generate(self.image, queue, on_progress=self.record(orch))

        self.assertEqual(
            orch.session.statuses(),
            [("a", "failed"), ("b", "failed"), ("c", "failed"), ("d", "succeeded")],
        )
        self.assertEqual(model.source_id, "d")
        self.assertIsInstance(orch.session.attempts[1].failure, ProviderReportedFailure)
        selecting = [e[1] for e in self.events if e[2] == "selecting"]
        self.assertEqual(selecting, ["a", "b", "c", "d"])

    async def test_timeout_advances(self):
        slow = ScriptedAdapter("slow", polls=())
        b = ScriptedAdapter("b")
        orch = self.orchestrator({"slow": slow, "b": b})
        queue = [_provider("slow", 1, timeout=0.1), _provider("b", 2)]
        model = await orch.generate(self.image, queue, on_progress=self.record(orch))

        self.assertEqual(orch.session.statuses(), [("slow", "timed_out"), ("b", "succeeded")])
        self.assertEqual(model.source_id, "b")
        self.assertIn((0, "slow", "timed_out"), self.events)
        self.assertEqual(orch.session.attempts[0].failure.error_code, "PROVIDER_TIMEOUT")

    async def test_all_fail_falls_back_to_local(self):
        a = ScriptedAdapter("a", polls=("failed",))
        b = ScriptedAdapter("b", polls=())
        orch = self.orchestrator({"a": a, "b": b})
        queue = [_provider("a", 1), _provider("b", 2, timeout=0.1)]
        model = await orch.generate(self.image, queue, on_progress=self.record(orch))

        self.assertEqual(model.source_id, "local")
        self.assertEqual(
            orch.session.statuses(),
            [("a", "failed"), ("b", "timed_out"), ("local", "succeeded")],
        )
        self.assertIn("albedo", model.material_maps)
        self.assertEqual(model.transform.initial_rotation, 0.0)

    async def test_local_pinned_last(self):
        a = ScriptedAdapter("a", polls=("failed",))
        orch = self.orchestrator({"a": a})
        queue = [ProviderSelector.local_provider(), _provider("a", 100)]
        model = await orch.generate(self.image, queue)
        self.assertEqual(orch.session.statuses(), [("a", "failed"), ("local", "succeeded")])
        self.assertEqual(model.source_id, "local")

    async def test_unregistered_provider_is_a_failure(self):
        orch = self.orchestrator({})
        model = await orch.generate(self.image, [_provider("ghost", 1)])
        self.assertEqual(orch.session.statuses(), [("ghost", "failed"), ("local", "succeeded")])
        self.assertEqual(model.source_id, "local")

    async def test_unparseable_asset_advances(self):
        class Garbage(ScriptedAdapter):
            async def fetch(self, output, context):
                return RawModelAsset(data=b"\x00" * 6000, format="glb", source_provider_id=self.provider_id)

        orch = self.orchestrator({"g": Garbage("g"), "b": ScriptedAdapter("b")})
        model = await orch.generate(self.image, [_provider("g", 1), _provider("b", 2)])
        self.assertEqual(orch.session.attempts[0].failure.error_code, "MALFORMED_RESPONSE")
        self.assertEqual(model.source_id, "b")

    async def test_corrupt_gltf_download_falls_back_to_local(self):
        class WrongVersion(ScriptedAdapter):
            async def fetch(self, output, context):
                data = b"glTF" + bytes(np.random.default_rng(3).integers(0, 256, 6000, dtype=np.uint8))
                return RawModelAsset(data=data, format="glb", source_provider_id=self.provider_id)

        orch = self.orchestrator({"rodin": WrongVersion("rodin")})
        model = await orch.generate(self.image, [_provider("rodin", 1)])

        self.assertEqual(model.source_id, "local")
        self.assertEqual(orch.session.statuses(), [("rodin", "failed"), ("local", "succeeded")])
        self.assertEqual(orch.session.attempts[0].failure.error_code, "MALFORMED_RESPONSE")
        self.assertFalse(orch.session.is_active)

        orch.adapters["rodin"] = WrongVersion("rodin")
        again = await orch.generate(self.image, [_provider("rodin", 1)])
        self.assertEqual(again.source_id, "local")

    async def test_unexpected_adapter_error_is_attempt_failure(self):
        class Exploding(ScriptedAdapter):
            async def poll(self, job, context):
                raise KeyError("status")

        orch = self.orchestrator({"x": Exploding("x")})
        model = await orch.generate(self.image, [_provider("x", 1)], on_progress=self.record(orch))

        self.assertEqual(model.source_id, "local")
        attempt = orch.session.attempts[0]
        self.assertEqual(attempt.status, AttemptStatus.FAILED)
        self.assertEqual(attempt.failure.error_code, "PROVIDER_FAILED")
        self.assertIsInstance(attempt.failure.__cause__, KeyError)
        self.assertEqual(len(attempt.resources), 0)

    async def test_phases_for_success(self):
        orch = self.orchestrator({"a": ScriptedAdapter("a")})
        await orch.generate(self.image, [_provider("a", 1)], on_progress=self.record(orch))
        self.assertEqual(
            [e[2] for e in self.events],
            ["selecting", "submitting", "polling", "fetching", "normalizing", "succeeded"],
        )


# ---------------------------------------------------------------------------
# Resources and cancellation
# ---------------------------------------------------------------------------

class TestResources(_OrchestratorTestCase):
    async def test_every_attempt_releases_its_buffers(self):
        a = ScriptedAdapter("a", polls=("running", "failed"))
        b = ScriptedAdapter("b")
        orch = self.orchestrator({"a": a, "b": b})
        await orch.generate(self.image, [_provider("a", 1), _provider("b", 2)])
        for attempt in orch.session.attempts:
            self.assertGreater(attempt.resources.allocated, 0)
            self.assertEqual(attempt.resources.released, attempt.resources.allocated)

    async def test_cancel_mid_poll(self):
        token = CancellationToken()
        a = ScriptedAdapter("a", polls=("running", "running", "completed"))
        b = ScriptedAdapter("b")
        a.poll_hook = lambda: token.cancel("user") if len(a.calls) == 3 else None
        orch = self.orchestrator({"a": a, "b": b})

        with self.assertRaises(GenerationCancelledError):
            await orch.generate(self.image, [_provider("a", 1), _provider("b", 2)], None, token, self.record(orch))

        session = orch.session
        self.assertEqual(session.state, SessionState.CANCELLED)
        self.assertEqual(session.statuses(), [("a", "cancelled")])
        self.assertEqual(self.events[-1], (0, "a", "cancelled"))
        self.assertEqual(b.calls, [])
        self.assertNotIn(("fetch",), a.calls)
        scope = session.attempts[0].resources
        self.assertEqual(scope.released, scope.allocated)

    async def test_cancel_aborts_in_flight_request(self):
        async def hang(request):
            await asyncio.sleep(30)
            return httpx.Response(200, json={"task_id": "never"})

        adapter = HttpProviderAdapter(PROTOCOLS["rodin"])
        orch = self.orchestrator({"rodin": adapter}, handler=hang)
        queue = [_provider("rodin", 1, timeout=60.0)]

        asyncio.get_running_loop().call_later(0.05, orch.cancel, "user closed dialog")
        with self.assertRaises(GenerationCancelledError):
            await asyncio.wait_for(orch.generate(self.image, queue, on_progress=self.record(orch)), timeout=5.0)

        self.assertEqual(orch.session.statuses(), [("rodin", "cancelled")])
        phases = [e[2] for e in self.events]
        self.assertEqual(phases, ["selecting", "submitting", "cancelled"])

    async def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        a = ScriptedAdapter("a")
        orch = self.orchestrator({"a": a})
        with self.assertRaises(GenerationCancelledError):
            await orch.generate(self.image, [_provider("a", 1)], cancellation_token=token)
        self.assertEqual(orch.session.attempts, [])
        self.assertEqual(a.calls, [])

    async def test_cancel_while_resolving_image_reference(self):
        async def slow_download(reference, strict=True):
            await asyncio.sleep(30)

        a = ScriptedAdapter("a")
        orch = self.orchestrator({"a": a})
        asyncio.get_running_loop().call_later(0.05, orch.cancel, "closed before upload")
        with patch("core.generation.orchestrator.load_source_image", slow_download):
            with self.assertRaises(GenerationCancelledError):
                await asyncio.wait_for(orch.generate("https://example.test/photo.png", [_provider("a", 1)]), 5.0)

        self.assertIsNone(orch.session)
        self.assertEqual(a.calls, [])
        model = await orch.generate(self.image, [_provider("a", 1)])
        self.assertEqual(model.source_id, "a")


# ---------------------------------------------------------------------------
# Wire-level scenarios
# ---------------------------------------------------------------------------

class TestWireScenarios(_OrchestratorTestCase):
    def _http_adapters(self):
        return {pid: HttpProviderAdapter(protocol) for pid, protocol in PROTOCOLS.items()}

    async def test_tiny_image_never_hits_network(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(500)

        tiny = SourceImage.from_bytes(_png(8, 8, noise=False))
        self.assertLess(tiny.size_bytes, 1000)
        orch = self.orchestrator(self._http_adapters(), handler=handler)
        queue = ProviderSelector.build_queue()
        model = await orch.generate(tiny, queue, Credentials({"meshy": "k"}))

        self.assertEqual(requests, [])
        self.assertEqual(model.source_id, "local")
        self.assertEqual(
            orch.session.statuses(),
            [
                ("huggingface", "failed"),
                ("rodin", "failed"),
                ("csm", "failed"),
                ("meshy", "failed"),
                ("local", "succeeded"),
            ],
        )
        for attempt in orch.session.attempts[:4]:
            self.assertEqual(attempt.failure.error_code, "IMAGE_INVALID")

    async def test_undersized_download_moves_to_next_provider(self):
        glb = _model_glb()

        def handler(request):
            path = request.url.path
            if path == "/api/v1/image-to-3d":
                return httpx.Response(200, json={"task_id": "r1"})
            if path == "/api/v1/task/r1":
                return httpx.Response(200, json={"status": "completed", "result": {"model_url": "https://cdn/r1.glb"}})
            if path == "/r1.glb":
                return httpx.Response(200, content=b"\x00" * 2048)
            if path == "/v1/image-to-3d":
                return httpx.Response(200, json={"task_id": "c1", "status": "completed", "output_url": "https://cdn/c1.glb"})
            if path == "/c1.glb":
                return httpx.Response(200, content=glb)
            return httpx.Response(404)

        orch = self.orchestrator(self._http_adapters(), handler=handler)
        queue = [_provider("rodin", 1), _provider("csm", 2)]
        model = await orch.generate(self.image, queue, on_progress=self.record(orch))

        self.assertEqual(orch.session.statuses(), [("rodin", "failed"), ("csm", "succeeded")])
        self.assertEqual(orch.session.attempts[0].failure.error_code, "MALFORMED_RESPONSE")
        self.assertEqual(model.source_id, "csm")

    async def test_auth_failure_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(401, json={"error": "invalid key"})

        orch = self.orchestrator(self._http_adapters(), handler=handler)
        queue = [_provider("meshy", 1, requires_credential=True)]
        model = await orch.generate(self.image, queue, Credentials({"meshy": "bad"}))

        self.assertEqual(calls, ["/v2/image-to-3d"])
        self.assertEqual(orch.session.attempts[0].failure.error_code, "AUTH_FAILED")
        self.assertEqual(model.source_id, "local")


# ---------------------------------------------------------------------------
# Exhaustion
# ---------------------------------------------------------------------------

class TestExhaustion(_OrchestratorTestCase):
    async def test_local_failure_is_aggregate_error(self):
        a = ScriptedAdapter("a", polls=("failed",))
        orch = self.orchestrator({"a": a, "local": LocalReconstructionAdapter(_BrokenEngine())})
        with self.assertRaises(GenerationExhaustedError) as ctx:
            await orch.generate(self.image, [_provider("a", 1)])

        self.assertEqual(orch.session.state, SessionState.EXHAUSTED)
        self.assertEqual([a.status for a in ctx.exception.attempts], [AttemptStatus.FAILED, AttemptStatus.FAILED])
        self.assertIn("local", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, ReconstructionError)

    async def test_undecodable_bytes_end_in_aggregate_error(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(500)

        orch = self.orchestrator({"rodin": HttpProviderAdapter(PROTOCOLS["rodin"])}, handler=handler)
        with self.assertRaises(GenerationExhaustedError) as ctx:
            await orch.generate(b"not an image" * 200, [_provider("rodin", 1)])

        self.assertEqual(requests, [])
        self.assertEqual(orch.session.statuses(), [("rodin", "failed"), ("local", "failed")])
        self.assertEqual(
            [a.failure.error_code for a in ctx.exception.attempts],
            ["IMAGE_INVALID", "RECONSTRUCTION_FAILED"],
        )
        self.assertEqual(orch.session.state, SessionState.EXHAUSTED)

    async def test_concurrent_generate_rejected(self):
        a = ScriptedAdapter("a", polls=())
        orch = self.orchestrator({"a": a})
        first = asyncio.ensure_future(orch.generate(self.image, [_provider("a", 1, timeout=0.3)]))
        await asyncio.sleep(0.05)
        with self.assertRaises(RuntimeError):
            await orch.generate(self.image, [_provider("a", 1)])
        model = await first
        self.assertEqual(model.source_id, "local")


if __name__ == "__main__":
    unittest.main()
