#!/usr/bin/env python3
"""
Example: Consuming from a Memphis station with auto-reconnection
"""

import asyncio
import json
from typing import Optional
from memphis_client import ConnectionConfig, ConnectionState, Memphis, Message


def on_state_change(state: ConnectionState, error: Optional[Exception]):
    if state == ConnectionState.ACTIVE:
        print("[Connection] Connected to control plane")
    elif state == ConnectionState.RECONNECTING:
        print(f"[Connection] Reconnecting... ({error})")
    elif state == ConnectionState.DISCONNECTED:
        print("[Connection] Disconnected")
    elif state == ConnectionState.FAILED:
        print(f"[Connection] Failed: {error}")


async def handle(message: Message):
    try:
        payload = json.loads(message.data.decode())
    except ValueError:
        payload = message.data
    print(f"Subject: {message.subject}")
    print(f"  Payload: {payload}")
    await message.ack()


async def main():
    # Reads MEMPHIS_HOST, MEMPHIS_USERNAME, MEMPHIS_CONNECTION_TOKEN and
    # MEMPHIS_BROKER_HOST; keyword arguments take precedence over the environment
    config = ConnectionConfig.from_env(max_reconnect=9)

    async with Memphis() as memphis:
        memphis.on_connection_state_change(on_state_change)
        await memphis.connect_with_config(config)

        consumer = await memphis.consumer(
            "temperature",
            "dashboard",
            consumer_group="dashboards",
            pull_interval_ms=500,
            batch_size=20,
        )
        consumer.on("message", handle)
        consumer.on("error", lambda error: print(f"[Consumer] Error: {error}"))
        print("Consuming from temperature, press Ctrl+C to stop\n")

        try:
            await asyncio.Event().wait()
        finally:
            await consumer.destroy()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down...")
