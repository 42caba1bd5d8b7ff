from __future__ import annotations

# Single durable key holding the serialized lock-state snapshot
LOCK_STATE_KEY = "bridgectl.lock_states"

# Persisted beliefs older than this are discarded on load (2 hours)
LOCK_STATE_TTL_S = 7200.0

BRIDGE_TYPES = ("ip", "serial")

# Remote instance status value meaning "forwarding is live"
REMOTE_RUNNING = "running"

# Reason recorded on entries adopted from remote truth
AUTO_DISCOVERED = "auto_discovered"
