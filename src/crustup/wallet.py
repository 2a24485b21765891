from __future__ import annotations

from substrateinterface import Keypair, KeypairType

from crustup.errors import ConfigError


def load_keypair(seed: str) -> Keypair:
    """sr25519 keypair from a mnemonic phrase or a secret URI (e.g. "//Alice")."""
    s = (seed or "").strip()
    if not s:
        raise ConfigError("bad_config", "seed_required")
    try:
        return Keypair.create_from_uri(s, crypto_type=KeypairType.SR25519)
    except ValueError as e:
        # Do not echo the seed.
        raise ConfigError("bad_config", "invalid_seed") from e
