"""SMS relay: drafts replies to inbound texts and routes them through reviewer approval."""
