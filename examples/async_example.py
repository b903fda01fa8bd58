#!/usr/bin/env python3
"""
Example: Producing and consuming concurrently with Memphis
"""

import asyncio
import json
from memphis_client import Memphis


async def producer_loop(memphis: Memphis):
    """Produce messages periodically."""
    producer = await memphis.producer("counter", "ticker")
    for i in range(10):
        await producer.produce(json.dumps({"count": i}).encode())
        print(f"Produced count={i}")
        await asyncio.sleep(1)
    await producer.destroy()


async def consumer_loop(memphis: Memphis):
    """Consume messages through the async iterator."""
    consumer = await memphis.consumer("counter", "printer", pull_interval_ms=200)
    print("Consumer started...")
    received = 0
    async for message in consumer.messages():
        payload = json.loads(message.data.decode())
        print(f"  Received: {payload}")
        await message.ack()
        received += 1
        if received == 10:
            await consumer.destroy()


async def main():
    async with Memphis() as memphis:
        await memphis.connect(
            host="localhost",
            username="app",
            connection_token="memphis",
            broker_host="localhost",
        )
        print("Connected to Memphis (async)")

        factory = await memphis.factory("demo")
        await memphis.station("counter", factory_name=factory.name)

        # Run producer and consumer concurrently
        await asyncio.gather(
            producer_loop(memphis),
            consumer_loop(memphis),
        )


if __name__ == "__main__":
    asyncio.run(main())
