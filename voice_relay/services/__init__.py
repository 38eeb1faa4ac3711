"""
Services module for the collaborators of the realtime voice relay.

Key components:
- identity: Extracts the caller's access token from the websocket handshake and
  verifies it with the identity provider over HTTP.
- message_store: The storage contract for rooms and messages, plus the
  process-local implementation used by default.
- presence: Room membership, history replay on join and fan-out of completed
  transcripts to the other participants.

Usage examples:
```python
from voice_relay.services.identity import IdentityVerifier, extract_bearer_token
from voice_relay.services.message_store import InMemoryMessageStore
from voice_relay.services.presence import PresenceHub

verifier = IdentityVerifier("https://project.supabase.co", public_key)
identity = await verifier.verify(extract_bearer_token(["websocket", token]))

hub = PresenceHub(InMemoryMessageStore())
room = await hub.join("lobby", connection)
```
"""
