from __future__ import annotations

import asyncio

import pytest

from chat_client.directives import Directive
from chat_client.errors import StreamError, TransportUnavailable
from chat_client.session import ResponseSession, SessionState
from chat_client.transport import CompletionRequest

from fakes import QueueTransport, RaisesOnCancelTransport, RecordingSink, ScriptedTransport, settle


def _session(store, conv, placeholder, transport, **kwargs):
    request = CompletionRequest(model_id="test-model", messages=list(conv.messages[:-1]))
    return ResponseSession(store, conv.id, placeholder.id, transport, request, **kwargs)


def _message(store, conv, placeholder):
    return store.get(conv.id).find(placeholder.id)


@pytest.mark.asyncio
async def test_completes_with_reasoning_split(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["Hel", "lo <th", "ink>sec", "ret</think> world"])
    session = _session(store, conv, placeholder, transport)

    state = await session.run()

    assert state is SessionState.COMPLETED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "Hello  world"
    assert msg.reasoning_text == "secret"
    assert msg.is_streaming is False
    assert msg.is_reasoning_active is False
    assert session.fragments_applied == 4
    assert transport.requests[0] is session.request


@pytest.mark.asyncio
async def test_reasoning_flag_tracks_stream(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = QueueTransport()
    session = _session(store, conv, placeholder, transport)
    task = asyncio.create_task(session.run())
    await settle()

    transport.push("Sure. <think>hmm")
    await settle()
    msg = _message(store, conv, placeholder)
    assert session.state is SessionState.STREAMING
    assert msg.is_reasoning_active is True
    assert msg.reasoning_text == "hmm"
    assert msg.is_streaming is True

    transport.push("</think>Done")
    await settle()
    msg = _message(store, conv, placeholder)
    assert msg.is_reasoning_active is False
    assert msg.visible_text == "Sure. Done"

    transport.finish()
    assert await task is SessionState.COMPLETED


@pytest.mark.asyncio
async def test_cancel_after_three_of_ten_fragments(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    fragments = [f"f{i} " for i in range(1, 11)]
    transport = ScriptedTransport(fragments)
    session = _session(store, conv, placeholder, transport)

    def _maybe_cancel(count):
        if count == 3:
            session.cancel()

    transport.on_resume = _maybe_cancel
    state = await session.run()

    assert state is SessionState.ABORTED
    msg = _message(store, conv, placeholder)
    assert msg.is_streaming is False
    assert msg.visible_text == "f1 f2 f3 "
    assert session.fragments_applied == 3
    assert session.token.is_cancelled
    # the transport was closed instead of being drained
    assert transport.yielded < len(fragments)


@pytest.mark.asyncio
async def test_cancel_before_run(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["never"])
    session = _session(store, conv, placeholder, transport)

    assert session.cancel() is True
    assert session.cancel() is False
    assert await session.run() is SessionState.ABORTED
    assert transport.requests == []
    assert _message(store, conv, placeholder).visible_text == ""
    assert _message(store, conv, placeholder).is_streaming is False


@pytest.mark.asyncio
async def test_task_cancellation_aborts(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = QueueTransport()
    session = _session(store, conv, placeholder, transport)
    task = asyncio.create_task(session.run())
    await settle()
    transport.push("partial")
    await settle()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.state is SessionState.ABORTED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "partial"
    assert msg.is_streaming is False


@pytest.mark.asyncio
async def test_stream_error_mid_stream(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(
        ["Hello", " <think>plan"], error=StreamError("connection reset"), error_after=2
    )
    session = _session(store, conv, placeholder, transport)

    assert await session.run() is SessionState.FAILED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "Error: connection reset"
    assert msg.reasoning_text == ""
    assert msg.is_streaming is False
    assert msg.is_reasoning_active is False
    assert session.outcome.error == "Error: connection reset"


@pytest.mark.asyncio
async def test_unavailable_before_first_fragment(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["x"], error=TransportUnavailable("refused"), error_after=0)
    session = _session(store, conv, placeholder, transport)

    assert await session.run() is SessionState.FAILED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "Error: the completion service is unavailable."
    assert session.fragments_applied == 0


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failure(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["a"], error=RuntimeError("kaput"), error_after=1)
    session = _session(store, conv, placeholder, transport)

    assert await session.run() is SessionState.FAILED
    assert _message(store, conv, placeholder).visible_text == "Error: kaput"


@pytest.mark.asyncio
async def test_directive_forwarded_and_hidden(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    sink = RecordingSink()
    transport = ScriptedTransport(['Noted. [SAVE_MEMORY key="', 'name" value="Ana"]'])
    session = _session(store, conv, placeholder, transport, memory_sink=sink)

    await session.run()

    assert sink.calls == [("name", "Ana")]
    assert _message(store, conv, placeholder).visible_text == "Noted. "
    assert session.outcome.directives == (Directive("name", "Ana"),)


@pytest.mark.asyncio
async def test_sink_failure_does_not_break_stream(store, streaming_conversation):
    conv, placeholder = streaming_conversation

    class BrokenSink:
        def record(self, key, value):
            raise OSError("disk full")

    transport = ScriptedTransport(['[SAVE_MEMORY key="a" value="b"]ok'])
    session = _session(store, conv, placeholder, transport, memory_sink=BrokenSink())

    assert await session.run() is SessionState.COMPLETED
    assert _message(store, conv, placeholder).visible_text == "ok"


@pytest.mark.asyncio
async def test_unfinished_directive_shown_at_end(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    sink = RecordingSink()
    transport = ScriptedTransport(["keep [SAVE_MEM"])
    session = _session(store, conv, placeholder, transport, memory_sink=sink)

    await session.run()

    assert _message(store, conv, placeholder).visible_text == "keep [SAVE_MEM"
    assert sink.calls == []


@pytest.mark.asyncio
async def test_stream_ending_inside_reasoning(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["a<think>b", "c</th"])
    session = _session(store, conv, placeholder, transport)

    assert await session.run() is SessionState.COMPLETED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "a"
    assert msg.reasoning_text == "bc</th"
    assert msg.is_reasoning_active is False


@pytest.mark.asyncio
async def test_updates_are_monotonic(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    snapshots = []
    store.subscribe(lambda c: snapshots.append(c.find(placeholder.id)))
    transport = ScriptedTransport(
        ["The <thi", "nk>let me", " see</think>", 'Answer [SAVE_MEMORY key="k" ', 'value="v"] done', " <"]
    )
    session = _session(store, conv, placeholder, transport, memory_sink=RecordingSink())

    await session.run()

    for before, after in zip(snapshots, snapshots[1:]):
        assert after.visible_text.startswith(before.visible_text)
        assert after.reasoning_text.startswith(before.reasoning_text)
        assert not (after.is_streaming and not before.is_streaming)
    final = snapshots[-1]
    assert final.visible_text == "The Answer  done <"
    assert final.reasoning_text == "let me see"
    assert final.is_streaming is False


@pytest.mark.asyncio
async def test_sync_iterable_transport(store, streaming_conversation):
    conv, placeholder = streaming_conversation

    class SyncTransport:
        def stream_completion(self, request):
            return iter(["one ", "<think>two</think>", "three"])

    session = _session(store, conv, placeholder, SyncTransport())
    assert await session.run() is SessionState.COMPLETED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "one three"
    assert msg.reasoning_text == "two"


@pytest.mark.asyncio
async def test_nothing_written_after_terminal_state(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    transport = ScriptedTransport(["done"])
    session = _session(store, conv, placeholder, transport)
    await session.run()
    snapshot = store.get(conv.id)

    assert session.cancel() is False
    assert store.get(conv.id) is snapshot
    assert await session.wait() is SessionState.COMPLETED


@pytest.mark.asyncio
async def test_error_raised_by_cancelled_transport_keeps_abort(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    session = _session(store, conv, placeholder, RaisesOnCancelTransport(["partial"]))
    task = asyncio.create_task(session.run())
    await settle()
    assert _message(store, conv, placeholder).visible_text == "partial"

    session.cancel()
    assert await task is SessionState.ABORTED
    msg = _message(store, conv, placeholder)
    assert msg.visible_text == "partial"
    assert msg.is_streaming is False
    assert session.error is None
