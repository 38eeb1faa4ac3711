"""
Bot module for relaying browser clients to the OpenAI Realtime API.

Key components:
- RealtimeSession: One websocket link to OpenAI's Realtime API per client
  connection. It sends the session configuration when the peer announces the
  session and only lets client frames through once the peer has acknowledged it.
- FrameGuard: Per-identity admission control applied to every inbound client
  frame (10 KiB size cap, 10 frames per 60 second window by default).

Usage examples:
```python
from voice_relay.bot import FrameGuard, RealtimeSession
from voice_relay.errors import AdmissionError

guard = FrameGuard()
session = RealtimeSession(api_key, "gpt-4o-realtime-preview-2024-10-01")
await session.connect()

try:
    guard.check(identity.subject, raw_frame)
    await session.send(raw_frame)
except AdmissionError as e:
    await client.send_json(e.to_frame())

async for raw, frame in session.frames():
    await client.send_text(raw)
```
"""

from voice_relay.bot.frame_guard import FrameGuard, RateWindow
from voice_relay.bot.realtime_api import RealtimeSession, SessionState

__all__ = ["FrameGuard", "RateWindow", "RealtimeSession", "SessionState"]
