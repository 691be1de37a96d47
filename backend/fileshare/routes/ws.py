"""WebSocket channel pushing file list snapshots and processing events."""
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def file_events(websocket: WebSocket):
    broadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    logger.info("Socket connection opened")
    await broadcaster.connect(websocket)
    try:
        # Clients only listen; reading keeps the connection open until they leave
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)
        logger.info("Socket connection closed")
