#!/usr/bin/env python3
"""
Example: Producing messages to a Memphis station
"""

import asyncio
import json
from memphis_client import Memphis, MemphisError


async def main():
    async with Memphis() as memphis:
        await memphis.connect(
            host="localhost",
            username="app",
            connection_token="memphis",
            broker_host="localhost",
        )
        print("Connected to Memphis")

        # Create the station the producer writes into
        factory = await memphis.factory("sensors", description="sensor readings")
        station = await memphis.station("temperature", factory_name=factory.name)
        print(f"Station ready: {station.name}")

        producer = await memphis.producer(station.name, "thermometer")

        for i in range(5):
            try:
                await producer.produce(
                    json.dumps({"value": 23.5 + i, "unit": "celsius"}).encode(),
                    ack_wait_sec=5,
                )
                print(f"Produced reading #{i}")
            except MemphisError as e:
                print(f"Produce failed: {e}")
            await asyncio.sleep(0.5)

        await producer.destroy()
        print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
