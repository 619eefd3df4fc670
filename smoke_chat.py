"""Manual smoke check against a running server.

    python smoke_chat.py <token-for-buyer> <token-for-seller>

Both tokens must be signed with the server's ``secrets.jwt.secret_key``.
"""
import asyncio
import json
import sys

import httpx
import websockets

BASE_URL = "http://localhost:8000"
WS_URL = "ws://localhost:8000/ws"


async def main(buyer_token, seller_token):
    buyer_headers = {"Authorization": f"Bearer {buyer_token}"}
    seller_headers = {"Authorization": f"Bearer {seller_token}"}

    async with httpx.AsyncClient(base_url=BASE_URL) as http, \
            websockets.connect(f"{WS_URL}?token={seller_token}") as seller_ws:
        connected = json.loads(await seller_ws.recv())
        print(f"Seller connected: {connected}")
        seller_id = connected["userId"]

        convo = (await http.post("/conversations", json={"recipientId": seller_id},
                                 headers=buyer_headers)).json()
        print(f"Conversation: {convo['id']}")

        await seller_ws.send(json.dumps({"type": "join_room", "conversationId": convo["id"]}))
        print(f"Joined: {await seller_ws.recv()}")

        sent = await http.post("/messages", json={"conversationId": convo["id"],
                                                  "text": "Hello from Python!"},
                               headers=buyer_headers)
        print(f"Sent: {sent.json()}")

        print(f"Pushed to seller: {await seller_ws.recv()}")

        history = await http.get(f"/conversations/{convo['id']}/messages", headers=seller_headers)
        print(f"History: {history.json()}")


if __name__ == "__main__":
    if len(sys.argv) != 3:
        sys.exit(__doc__)
    asyncio.run(main(sys.argv[1], sys.argv[2]))
