import sys
from pathlib import Path

from katal import crypto

# Quick one-off keygen for the bot identity.
# - secp256k1, same as every key the relays see.
# - Pass a path to also write the secret as a .env line (BOT_PRIVKEY=...);
#   the file is created 0600. Without a path nothing touches the disk.

# 1) Generate a fresh keypair.
identity = crypto.Identity.generate()

# 2) Optionally persist it as a dotenv entry the bot picks up on start.
if len(sys.argv) > 1:
    env_path = Path(sys.argv[1]).expanduser()
    env_path.parent.mkdir(parents=True, exist_ok=True)
    with open(env_path, "a", encoding="utf-8") as f:
        f.write(f"BOT_PRIVKEY={identity.secret_hex}\n")
    env_path.chmod(0o600)
    print(f"Secret appended to {env_path}")

# 3) Print every format so you can paste whichever your client wants.
print("Private key (hex): ", identity.secret_hex)
print("Private key (nsec):", identity.nsec)
print("Public key (hex):  ", identity.pubkey)
print("Public key (npub): ", identity.npub)
