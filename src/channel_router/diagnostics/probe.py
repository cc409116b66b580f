"""Single-channel connection test and model catalog fetch."""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..adapters import create_chat_client
from ..adapters.base import ChatClientConfig
from ..channels.keys import KeyRotator
from ..channels.store import ChannelStore
from ..errors import classify_error
from ..usage.recorder import UsageRecorder

logger = logging.getLogger(__name__)

TEST_MESSAGE = {"role": "user", "content": [{"type": "text", "text": "Hello"}]}
TEST_MAX_TOKENS = 20
DEFAULT_TEST_MODEL = "gpt-4o-mini"


@dataclass
class ProbeResult:
    """Outcome of a channel connection test."""

    success: bool
    message: str
    model: str
    elapsed_ms: int
    reply: str = ""
    key_index: int = -1
    key_name: str = ""
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ChannelProbe:
    """Tests channels and lists their provider models."""

    def __init__(
        self,
        store: ChannelStore,
        recorder: UsageRecorder,
        rotator: Optional[KeyRotator] = None,
        client_factory=create_chat_client,
        timeout: float = 30.0,
    ):
        self._store = store
        self._recorder = recorder
        self._rotator = rotator or KeyRotator(lock=store.lock)
        self._client_factory = client_factory
        self._timeout = timeout

    def _client(self, channel, api_key: str):
        return self._client_factory(
            channel.adapter_type,
            ChatClientConfig.from_passthrough(
                api_key, channel.base_url, channel.passthrough, timeout=self._timeout
            ),
        )

    async def test_channel(self, channel_id: str, model: Optional[str] = None) -> ProbeResult:
        """Send a short greeting through the channel.

        Records a ``source='test'`` usage record and updates the channel's
        status. Provider failures are reported in the result, not raised.

        Raises:
            NotFoundError: Unknown channel id
        """
        channel = self._store.require(channel_id)
        concrete = [m for m in channel.models if m != "*"]
        test_model = model or (concrete[0] if concrete else DEFAULT_TEST_MODEL)
        actual_model = channel.model_mapping.get(test_model, test_model)

        start_time = time.time()
        key_index, key_name, strategy = -1, "", ""
        try:
            selection = self._rotator.select_key(channel, record_usage=True)
            key_index, key_name, strategy = (
                selection.key_index,
                selection.key_name,
                selection.strategy,
            )
            client = self._client(channel, selection.key)
            response = await client.send_message(
                TEST_MESSAGE, model=actual_model, max_tokens=TEST_MAX_TOKENS
            )
        except Exception as e:
            elapsed_ms = int((time.time() - start_time) * 1000)
            error_type = classify_error(e)
            self._store.mark_failure(channel.id, str(e))
            self._rotator.report_failure(channel, key_index)
            await self._recorder.record(
                channel_id=channel.id,
                channel_name=channel.name,
                model=test_model,
                actual_model=actual_model,
                key_index=key_index,
                key_name=key_name,
                strategy=strategy,
                duration_ms=elapsed_ms,
                success=False,
                error=str(e),
                error_type=error_type,
                source="test",
            )
            logger.warning(f"Channel test failed for {channel.id} [{error_type}]: {e}")
            return ProbeResult(
                success=False,
                message=str(e),
                model=test_model,
                elapsed_ms=elapsed_ms,
                key_index=key_index,
                key_name=key_name,
                error_type=error_type,
            )

        elapsed_ms = int((time.time() - start_time) * 1000)
        self._store.mark_success(channel.id)
        self._rotator.report_success(channel, key_index)
        await self._recorder.record(
            channel_id=channel.id,
            channel_name=channel.name,
            model=test_model,
            actual_model=actual_model,
            key_index=key_index,
            key_name=key_name,
            strategy=strategy,
            duration_ms=elapsed_ms,
            success=True,
            usage=response.usage,
            messages=[TEST_MESSAGE],
            response_text=response.text,
            source="test",
        )
        logger.info(f"Channel test passed for {channel.id} in {elapsed_ms}ms")
        return ProbeResult(
            success=True,
            message="Connection OK",
            model=test_model,
            elapsed_ms=elapsed_ms,
            reply=response.text[:100],
            key_index=key_index,
            key_name=key_name,
        )

    async def fetch_models(self, channel_id: str) -> List[str]:
        """Return the provider's model catalog for a channel.

        Raises:
            NotFoundError: Unknown channel id
            ConfigurationError: Channel has no usable key
            ProviderCallError: Catalog request failed
        """
        channel = self._store.require(channel_id)
        selection = self._rotator.select_key(channel, record_usage=False)
        try:
            models = await self._client(channel, selection.key).list_models()
        except Exception as e:
            self._store.mark_failure(channel.id, str(e))
            raise
        self._store.mark_success(channel.id)
        return models
