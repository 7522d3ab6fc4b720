"""
Katal Bot — a relay-network direct-message bot that drives a remote download
manager (aria2) and serves the results over HTTP.

Talk to it by sending an encrypted DM to its public key:
- Unknown senders must first send the unlock code printed at startup.
- Authorized senders get commands: download, status_<gid>, cancel_<gid>,
  find <imdb>, clean, autoclean, stats... (send "help").

Hardening notes:
- Inbound events: id + signature verified, age-windowed, deduplicated by id.
- Undecryptable DMs are dropped without a reply.
- The file server and dashboard never serve outside their roots.
- Unlock attempts are NOT rate limited; keep the code long if exposed.

Set NSEC (or BOT_PRIVKEY) to keep the same identity across restarts.
"""
__all__ = [
    "aria2",
    "auth",
    "channel",
    "config",
    "crypto",
    "dispatcher",
    "errors",
    "framing",
    "gateway",
    "messages",
    "node",
    "relay",
    "replay",
    "run_bot",
    "storage",
    "supervisor",
    "tasks",
    "torrents",
    "utils",
    "web",
]
