"""Greeting service implementation."""

from __future__ import annotations

import asyncio
import logging

from ..connection import DuplexConnection
from ..implementation import CallContext, ServiceImplementation, ServiceImplementationBuilder
from ..transport.sse import ServerStream
from .schema import (
    EchoMessage,
    SayHelloInput,
    SayHelloOutput,
    SendMessageInput,
    SendMessageOutput,
    StreamedNameInput,
    greeting_service,
)

logger = logging.getLogger(__name__)


def create_greeting_implementation(letter_delay: float = 1.0) -> ServiceImplementation:
    """Build the Greeting implementation.

    Args:
        letter_delay: Seconds between letters on StreamedName
    """
    builder = ServiceImplementationBuilder(greeting_service)

    @builder.implements("SayHello")
    async def say_hello(input: SayHelloInput, ctx: CallContext) -> SayHelloOutput:
        # One greeting per locale
        return SayHelloOutput(
            greeting={locale: f"Hello {name}" for locale, name in input.name.items()}
        )

    @builder.implements("SendMessage")
    async def send_message(input: SendMessageInput, ctx: CallContext) -> SendMessageOutput:
        logger.info(f"Received message: {input.message}")
        return SendMessageOutput(status=True)

    @builder.implements("StreamedName")
    async def streamed_name(
        input: StreamedNameInput, ctx: CallContext, conn: ServerStream
    ) -> None:
        for letter in input.name:
            await asyncio.sleep(letter_delay)
            await conn.write(letter)
        await conn.close()

    @builder.implements("echo")
    async def echo(ctx: CallContext, conn: DuplexConnection) -> None:
        conn.on_close(lambda: logger.info("Echo session ended"))

        async def reply(conn: DuplexConnection, message: EchoMessage) -> None:
            await conn.send(EchoMessage(msg=f"Echo: {message.msg}"))
            await conn.close()

        conn.on_message("Echo", reply)

    return builder.build()
