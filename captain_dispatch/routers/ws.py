import json

import jwt
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..auth import decode_token
from ..errors import ValidationError


router = APIRouter()


@router.websocket("/ws")
async def ws_dispatch(websocket: WebSocket):
    # Resolve identity from token (?token=JWT)
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        identity = decode_token(token)
    except jwt.InvalidTokenError:
        await websocket.close(code=4401)
        return
    dispatcher = websocket.app.state.dispatcher
    conn = await dispatcher.manager.connect(websocket, identity)
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            text = frame.get("text")
            if text is None:
                await conn.send("ride:error", ValidationError("Binary frames are not supported").to_dict())
                continue
            try:
                message = json.loads(text)
            except ValueError:
                await conn.send("ride:error", ValidationError("Malformed frame").to_dict())
                continue
            await dispatcher.handle(conn, message)
    except WebSocketDisconnect:
        pass
    finally:
        await dispatcher.handle_disconnect(conn)
