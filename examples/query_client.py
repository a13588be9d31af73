"""
Example: issuing correlated queries and listening for pushes.

Make sure quote_server.py is running first.
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc import (
    Connection,
    ConnectionConfig,
    LzmaDecompressor,
    ZmqTransport,
    default_pretty_handler,
)


async def main():
    conn = Connection(
        ZmqTransport("tcp://127.0.0.1:5555"),
        decompressor=LzmaDecompressor(),
        config=ConnectionConfig.from_env(client_version="example-client"),
        log_handler=default_pretty_handler,
    )

    async with conn:
        conn.on("trade", lambda event: print(f"trade at {event['price']}"))

        pong = await conn.call("ping")
        print(f"ping round trip: {pong.get('_dt_cdelta')}ms")

        await conn.call("login", {"name": "demo"})
        print(f"session key: {conn.get_key()}")

        # The second quote comes from the cache
        for _ in range(2):
            quote = await conn.call("get-quote", {"symbol": "ACME", "_cache": 10})
            print(f"{quote['symbol']}: {quote['price']}")

        await conn.once("trade")
        print(conn.metrics.to_dict())


if __name__ == "__main__":
    asyncio.run(main())
