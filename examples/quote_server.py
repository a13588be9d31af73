"""
Example: minimal ROUTER server speaking the query/response protocol.

Answers ``ping``, ``login`` and ``get-quote`` queries, compressing replies
with LZMA when the client advertises ``lzma``, and pushes a ``trade`` event
to every known client once a second.

Usage:
1. Run this server in a separate terminal
2. Then run query_client.py

python quote_server.py   # Terminal 1
python query_client.py   # Terminal 2
"""

import asyncio
import json
import lzma
import random
import sys
import os
import time

import zmq
import zmq.asyncio

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc.core.message import pack_frame, unpack_frame

ENDPOINT = "tcp://127.0.0.1:5555"


def now_ms() -> int:
    return int(time.time() * 1000)


def answer(query: dict) -> dict:
    """Compute the reply body for a query."""
    if query["type"] == "ping":
        return {}
    if query["type"] == "login":
        return {"code": "login-success", "key": f"session-{random.randrange(10**6)}"}
    if query["type"] == "get-quote":
        return {"symbol": query.get("symbol"), "price": round(random.uniform(90, 110), 2)}
    return {"code": "unknown-query-type"}


def encode(body: dict, compress: bool) -> dict:
    text = json.dumps(body)
    if compress:
        return {"e": "lzma", "s": lzma.compress(text.encode("utf-8")), "t": now_ms()}
    return {"e": "raw", "s": text, "t": now_ms()}


async def serve():
    context = zmq.asyncio.Context()
    socket = context.socket(zmq.ROUTER)
    socket.bind(ENDPOINT)
    clients = set()
    print(f"Serving on {ENDPOINT}")

    async def pusher():
        while True:
            await asyncio.sleep(1)
            trade = encode({"type": "trade", "price": round(random.uniform(90, 110), 2)}, False)
            for identity in list(clients):
                await socket.send_multipart([identity, b"", pack_frame("push", trade)])

    push_task = asyncio.create_task(pusher())
    try:
        while True:
            identity, _, frame = await socket.recv_multipart()
            clients.add(identity)
            event, query = unpack_frame(frame)
            if event != "query":
                continue

            # Signed queries carry the original payload inside the envelope
            if "signedContent" in query:
                query = query["signedContent"].get("content", {})

            received = now_ms()
            body = answer(query)
            body.update({"is-reply-to": query["id"], "_t_srecv": received, "_t_sdone": now_ms()})
            print(f"{query['id']} -> {body}")

            reply = encode(body, bool(query.get("lzma")))
            await socket.send_multipart([identity, b"", pack_frame("response", reply)])
    finally:
        push_task.cancel()
        socket.close()
        context.term()


if __name__ == "__main__":
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass
