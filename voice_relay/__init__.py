"""
Realtime Voice Relay - Browser to OpenAI Realtime API Proxy

This application relays realtime voice conversations between browser clients and
OpenAI's Realtime API. Each browser websocket is paired with one upstream realtime
session; audio events flow in both directions, and completed transcripts are shared
with everyone present in the same conversation room.

Architecture Overview:
- FastAPI server exposing the /realtime-chat websocket endpoint
- Authentication gate backed by an external identity provider
- Per-identity admission control (frame size and rate limits)
- OpenAI Realtime API session management with explicit lifecycle tracking
- Room presence, transcript fan-out and message history replay

Key Components:
- bot: Upstream realtime session and the frame admission guard
- config: Application-wide configuration, constants, and logging setup
- models: Data structures for frames, connections, rooms and messages
- services: Identity provider client, message store and presence hub
- websocket_manager: The relay core pairing client connections with upstream sessions

Getting Started:
1. Set up environment variables:
   - OPENAI_API_KEY: Your OpenAI API key
   - IDENTITY_PROVIDER_URL: Base URL of the identity provider
   - IDENTITY_PROVIDER_KEY: Public key of the identity provider
   - RELAY_AUTH_MODE: "required" (default) or "public"
   - PORT / HOST / LOG_LEVEL: Server settings

2. Start the server:
   ```bash
   python run.py
   ```

3. Connect a browser client:
   ```js
   new WebSocket("wss://your-server/realtime-chat?room=lobby", ["websocket", accessToken])
   ```
"""
