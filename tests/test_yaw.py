"""Tests for yaw estimation."""

import asyncio

import pytest

from atelier.adapter.vision.yaw import FALLBACK_ESTIMATE, YawEstimator, parse_yaw_reply
from atelier.core.cancellation import CancelToken
from atelier.core.errors import OperationCancelledError
from atelier.providers.adapter import GenerationAdapter
from atelier.providers.errors import BackendError
from tests.conftest import ScriptedBackend


class TestParseYawReply:
    """Test reply parsing."""

    def test_plain_json(self):
        estimate = parse_yaw_reply('{"angle": -25.5, "confidence": 0.7}')
        assert estimate.angle_deg == -25.5
        assert estimate.confidence == 0.7

    def test_code_fence_and_prose(self):
        estimate = parse_yaw_reply('Sure!\n```json\n{"angle": 12}\n```')
        assert estimate.angle_deg == 12.0
        assert estimate.confidence == 0.0

    def test_confidence_clamped(self):
        assert parse_yaw_reply('{"angle": 0, "confidence": 3}').confidence == 1.0

    @pytest.mark.parametrize("text", ["no json here", '{"angle": 400}', '{"confidence": 1}', ""])
    def test_unusable_replies(self, text):
        with pytest.raises((ValueError, KeyError)):
            parse_yaw_reply(text)


class TestYawEstimator:
    """Test the estimator's fallback behavior."""

    def test_uses_text_reply(self, source_payload):
        backend = ScriptedBackend(text_response='{"angle": 30, "confidence": 0.9}')
        estimator = YawEstimator(GenerationAdapter(backend, backoff_s=0))

        estimate = asyncio.run(estimator.estimate(source_payload))

        assert estimate.angle_deg == 30.0
        assert backend.calls[0].images == [source_payload]

    def test_backend_failure_falls_back_to_zero(self, source_payload):
        backend = ScriptedBackend(fail_when=lambda request: BackendError("503 overloaded"))
        estimator = YawEstimator(GenerationAdapter(backend, backoff_s=0))

        assert asyncio.run(estimator.estimate(source_payload)) == FALLBACK_ESTIMATE

    def test_garbage_reply_falls_back(self, source_payload):
        backend = ScriptedBackend(text_response="I cannot tell")
        estimator = YawEstimator(GenerationAdapter(backend, backoff_s=0))

        assert asyncio.run(estimator.estimate(source_payload)) == FALLBACK_ESTIMATE

    def test_cancellation_propagates(self, source_payload):
        estimator = YawEstimator(GenerationAdapter(ScriptedBackend(), backoff_s=0))

        async def scenario():
            token = CancelToken()
            token.cancel()
            await estimator.estimate(source_payload, token)

        with pytest.raises(OperationCancelledError):
            asyncio.run(scenario())
