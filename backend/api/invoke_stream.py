from __future__ import annotations

import json
import logging
from asyncio import sleep
from enum import Enum
from typing import Any, Awaitable, Callable

from engine.session import MapSession


log = logging.getLogger(__name__)

# Pause between streamed words so the chat UI renders progressively.
WORD_DELAY_S = 0.02

# thread -> assistant text (possibly containing map directives)
Responder = Callable[[Any], Awaitable[str]]


class EventType(str, Enum):
    append = "append"
    commit = "commit"
    map_state = "map_state"


def format_event(type: EventType, data: str):
    return f"event: {type.value}\ndata: {data}\n\n"


async def echo_responder(thread) -> str:
    """
    Stand-in for the language model: answers with the last message, so directives typed
    into the chat are applied as-is.
    """
    return thread.messages[-1].text if thread.messages else ""


async def handle_incoming_message(
    thread,
    *,
    session: MapSession,
    responder: Responder = echo_responder,
):
    try:
        reply = await responder(thread)
        text = await session.handle_ai_response(reply)

        for word in text.replace("\n", " \n ").split():
            yield format_event(EventType.append, word)
            await sleep(WORD_DELAY_S)

        # Send the map payload before commit so the frontend attaches it to the message.
        yield format_event(
            EventType.map_state, json.dumps(session.snapshot(), ensure_ascii=False)
        )
        yield format_event(EventType.commit, ".")
    except Exception as e:
        log.error("invoke_error error=%s", e)
        msg = f"Backend error: {type(e).__name__}: {e}"
        for word in msg.split():
            yield format_event(EventType.append, word)
        yield format_event(EventType.commit, ".")
