import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from AI.base_client import GenerationError
from messaging.intake import InboundMessage
from messaging.pipeline import MessagePipeline, build_pipeline, init_pipeline
from utils.pipeline_config import PipelineConfig


class DummyGenerator:
    def __init__(self, fail_for: Tuple[str, ...] = (), reply: Optional[str] = None) -> None:
        self.calls: List[Tuple[str, str, List[Dict[str, str]]]] = []
        self.fail_for = fail_for
        self.reply = reply

    async def generate(self, conversation_id: str, text: str, history: List[Dict[str, str]]) -> str:
        self.calls.append((conversation_id, text, history))
        await asyncio.sleep(0)
        if conversation_id in self.fail_for:
            raise GenerationError("APIError", "upstream down")
        if self.reply is not None:
            return self.reply
        return f"reply to {text}"


class DummySender:
    def __init__(self, result: bool = True, raises: bool = False) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.result = result
        self.raises = raises

    async def send(self, conversation_id: str, text: str) -> bool:
        if self.raises:
            raise ConnectionError("socket closed")
        self.sent.append((conversation_id, text))
        return self.result


def make_config(**overrides) -> PipelineConfig:
    values = dict(merge_window_ms=30, max_merged_messages=5)
    values.update(overrides)
    return PipelineConfig(**values)


def inbound(conversation_id: str, message_id: str, text: str, sender_is_self: bool = False) -> InboundMessage:
    return InboundMessage(
        conversation_id=conversation_id,
        message_id=message_id,
        text=text,
        arrival_time=0.0,
        sender_is_self=sender_is_self,
    )


async def settle(pipeline: MessagePipeline) -> None:
    """Wait for open windows to flush and admitted jobs to finish."""
    await asyncio.sleep(pipeline.config.merge_window_ms / 1000.0 + 0.05)
    await pipeline.gate.join()


def test_redelivered_message_is_processed_once() -> None:
    generator = DummyGenerator()
    sender = DummySender()

    async def scenario() -> List[str]:
        pipeline = MessagePipeline(generator, sender, config=make_config())
        outcomes = [pipeline.handle_inbound(inbound("c1", "m1", "hello")) for _ in range(3)]
        await settle(pipeline)
        return outcomes

    assert asyncio.run(scenario()) == ["queued", "duplicate", "duplicate"]
    assert len(generator.calls) == 1
    assert sender.sent == [("c1", "reply to hello")]


def test_burst_is_merged_into_one_generation() -> None:
    generator = DummyGenerator()
    sender = DummySender()

    async def scenario() -> None:
        pipeline = MessagePipeline(generator, sender, config=make_config(merge_window_ms=100))
        pipeline.handle_inbound(inbound("c1", "m1", "a"))
        await asyncio.sleep(0.02)
        pipeline.handle_inbound(inbound("c1", "m2", "b"))
        await asyncio.sleep(0.02)
        pipeline.handle_inbound(inbound("c1", "m3", "c"))
        await settle(pipeline)

    asyncio.run(scenario())

    assert [call[1] for call in generator.calls] == ["a\nb\nc"]


def test_own_reply_echo_is_suppressed() -> None:
    generator = DummyGenerator(reply="Sure thing!")
    sender = DummySender()

    async def scenario() -> List[str]:
        pipeline = MessagePipeline(generator, sender, config=make_config())
        pipeline.handle_inbound(inbound("c1", "m1", "do it"))
        await settle(pipeline)

        outcomes = [
            pipeline.handle_inbound(inbound("c1", "m2", "Sure thing!")),
            pipeline.handle_inbound(inbound("c2", "m3", "Sure thing!")),
            pipeline.handle_inbound(inbound("c1", "m4", "thanks", sender_is_self=True)),
        ]
        await settle(pipeline)
        return outcomes

    assert asyncio.run(scenario()) == ["echo", "queued", "self"]
    assert [call[0] for call in generator.calls] == ["c1", "c2"]


def test_invalid_message_is_dropped() -> None:
    async def scenario() -> str:
        pipeline = MessagePipeline(DummyGenerator(), DummySender(), config=make_config())
        return pipeline.handle_inbound(inbound("", "m1", "hi"))

    assert asyncio.run(scenario()) == "invalid"


def test_generator_receives_prior_history() -> None:
    generator = DummyGenerator()
    sender = DummySender()

    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(generator, sender, config=make_config())
        pipeline.handle_inbound(inbound("c1", "m1", "first"))
        await settle(pipeline)
        pipeline.handle_inbound(inbound("c1", "m2", "second"))
        await settle(pipeline)
        return pipeline

    pipeline = asyncio.run(scenario())

    assert generator.calls[0][2] == []
    assert generator.calls[1][2] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply to first"},
    ]
    assert len(pipeline.store.get_history("c1")) == 4


def test_generation_failure_records_no_reply_and_spares_other_conversations() -> None:
    generator = DummyGenerator(fail_for=("bad",))
    sender = DummySender()

    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(generator, sender, config=make_config())
        pipeline.handle_inbound(inbound("bad", "m1", "hi"))
        pipeline.handle_inbound(inbound("good", "m2", "hi"))
        await settle(pipeline)
        return pipeline

    pipeline = asyncio.run(scenario())

    assert pipeline.store.get_history("bad") == [{"role": "user", "content": "hi"}]
    assert sender.sent == [("good", "reply to hi")]
    assert pipeline.get_stats()["outcomes"]["generation_failed"] == 1


def test_empty_reply_is_not_sent() -> None:
    generator = DummyGenerator(reply="   ")
    sender = DummySender()

    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(generator, sender, config=make_config())
        pipeline.handle_inbound(inbound("c1", "m1", "hi"))
        await settle(pipeline)
        return pipeline

    pipeline = asyncio.run(scenario())

    assert sender.sent == []
    assert pipeline.store.get_history("c1") == [{"role": "user", "content": "hi"}]


@pytest.mark.parametrize("sender", [DummySender(result=False), DummySender(raises=True)])
def test_send_failure_keeps_history_but_skips_loop_guard(sender: DummySender) -> None:
    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(DummyGenerator(), sender, config=make_config())
        pipeline.handle_inbound(inbound("c1", "m1", "hi"))
        await settle(pipeline)
        return pipeline

    pipeline = asyncio.run(scenario())

    assert pipeline.store.get_history("c1")[-1] == {"role": "assistant", "content": "reply to hi"}
    assert len(pipeline.loop_guard) == 0
    assert pipeline.get_stats()["outcomes"]["send_failed"] == 1


def test_update_settings() -> None:
    async def scenario() -> None:
        pipeline = MessagePipeline(DummyGenerator(), DummySender(), config=make_config())

        assert pipeline.update_settings(concurrency=100) == {"concurrency": 20}
        assert pipeline.gate.concurrency == 20

        pipeline.update_settings(merge_window_ms=250, max_history_per_chat=5)
        assert pipeline.buffer.merge_window_ms == 250
        assert pipeline.store.max_history == 5

        with pytest.raises(ValueError):
            pipeline.update_settings(dedup_window_ms=1)
        with pytest.raises(ValueError):
            pipeline.update_settings(unknown_setting=1)
        with pytest.raises(ValueError):
            pipeline.update_settings(max_merged_messages=0)
        # A rejected change leaves the previous values in place
        assert pipeline.buffer.max_merged_messages == 5

    asyncio.run(scenario())


def test_stats_report_queue_depth_and_gate() -> None:
    async def scenario() -> dict:
        pipeline = MessagePipeline(DummyGenerator(), DummySender(), config=make_config(merge_window_ms=10000))
        pipeline.handle_inbound(inbound("c1", "m1", "a"))
        pipeline.handle_inbound(inbound("c1", "m2", "b"))
        stats = pipeline.get_stats()
        pipeline.buffer.clear_all()
        return stats

    stats = asyncio.run(scenario())

    assert stats["queue_depths"] == {"c1": 2}
    assert stats["admission"]["concurrency"] == 4
    assert stats["outcomes"] == {"queued": 2}


def test_shutdown_discards_pending_batches() -> None:
    generator = DummyGenerator()

    async def scenario() -> MessagePipeline:
        pipeline = await init_pipeline(generator, DummySender(), make_config(merge_window_ms=10000))
        assert pipeline.sweeper.running
        pipeline.handle_inbound(inbound("c1", "m1", "never answered"))
        await pipeline.shutdown(timeout=1)
        return pipeline

    pipeline = asyncio.run(scenario())

    assert generator.calls == []
    assert not pipeline.sweeper.running
    assert pipeline.buffer.queue_depths() == {}


def test_build_pipeline_wires_config() -> None:
    config = make_config(concurrency=6, max_history_per_chat=7, lockout_window_ms=2000)

    async def scenario() -> MessagePipeline:
        return build_pipeline(config, DummyGenerator(), DummySender())

    pipeline = asyncio.run(scenario())

    assert pipeline.gate.concurrency == 6
    assert pipeline.store.max_history == 7
    assert pipeline.loop_guard.window_seconds == 2.0
    assert not pipeline.sweeper.running


class SlowFirstGenerator(DummyGenerator):
    """Takes longer to answer the given text than anything else."""

    def __init__(self, slow_text: str, delay: float) -> None:
        super().__init__()
        self.slow_text = slow_text
        self.delay = delay

    async def generate(self, conversation_id: str, text: str, history: List[Dict[str, str]]) -> str:
        if text == self.slow_text:
            await asyncio.sleep(self.delay)
        return await super().generate(conversation_id, text, history)


def test_replies_keep_arrival_order_within_a_conversation() -> None:
    generator = SlowFirstGenerator("first", delay=0.05)
    sender = DummySender()

    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(generator, sender, config=make_config(max_merged_messages=1))
        pipeline.handle_inbound(inbound("c1", "m1", "first"))
        pipeline.handle_inbound(inbound("c1", "m2", "second"))
        # The second turn waits outside the gate while the first one runs
        assert pipeline.get_stats()["waiting_turns"] == {"c1": 1}
        assert pipeline.gate.outstanding == 1
        await asyncio.sleep(0.15)
        await pipeline.gate.join()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert sender.sent == [("c1", "reply to first"), ("c1", "reply to second")]
    assert pipeline.store.get_history("c1") == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply to first"},
        {"role": "user", "content": "second"},
        {"role": "assistant", "content": "reply to second"},
    ]
    assert generator.calls[1][2] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply to first"},
    ]
    assert pipeline.get_stats()["waiting_turns"] == {}


def test_slow_conversation_does_not_hold_back_others() -> None:
    generator = SlowFirstGenerator("slow", delay=0.1)
    sender = DummySender()

    async def scenario() -> None:
        pipeline = MessagePipeline(generator, sender, config=make_config(max_merged_messages=1))
        pipeline.handle_inbound(inbound("c1", "m1", "slow"))
        pipeline.handle_inbound(inbound("c2", "m2", "fast"))
        await asyncio.sleep(0.2)
        await pipeline.gate.join()

    asyncio.run(scenario())

    assert sender.sent == [("c2", "reply to fast"), ("c1", "reply to slow")]


def test_failed_turn_still_releases_the_next_one() -> None:
    generator = DummyGenerator(fail_for=("c1",))
    sender = DummySender()

    async def scenario() -> MessagePipeline:
        pipeline = MessagePipeline(generator, sender, config=make_config(max_merged_messages=1))
        pipeline.handle_inbound(inbound("c1", "m1", "one"))
        pipeline.handle_inbound(inbound("c1", "m2", "two"))
        await asyncio.sleep(0.05)
        await pipeline.gate.join()
        return pipeline

    pipeline = asyncio.run(scenario())

    assert [call[1] for call in generator.calls] == ["one", "two"]
    assert pipeline.get_stats()["outcomes"]["generation_failed"] == 2
