"""
Secrets and SSH hardening helpers.

Passwords are only ever drawn from a cryptographic source: the kernel entropy
pool first, then ``openssl rand``. A timestamp-derived value exists for hosts
with neither, but it is opt-in, reported on the returned ``Secret`` and logged
as an error every time it is used.
"""

import base64
import binascii
import hashlib
import logging
import os
import re
import shutil
import string
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .errors import InsecureEntropyError, ValidationError

logger = logging.getLogger("server_setup")

DEFAULT_CHARSET = string.ascii_letters + string.digits
SPECIAL_CHARACTERS = "@#%^&*-_=+"

INSECURE_SOURCE = "insecure-timestamp"

SSH_HARDENING_SETTINGS: Dict[str, str] = {
    "Protocol": "2",
    "PermitRootLogin": "no",
    "PasswordAuthentication": "no",
    "PubkeyAuthentication": "yes",
    "AuthorizedKeysFile": ".ssh/authorized_keys",
    "PermitEmptyPasswords": "no",
    "ChallengeResponseAuthentication": "no",
    "UsePAM": "yes",
    "X11Forwarding": "no",
    "PrintMotd": "no",
    "ClientAliveInterval": "300",
    "ClientAliveCountMax": "2",
    "MaxAuthTries": "3",
    "MaxSessions": "2",
    "LoginGraceTime": "30",
}

SSH_KEY_TYPES = (
    "ssh-ed25519",
    "ssh-rsa",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)


@dataclass
class Secret:
    value: str = field(repr=False)
    source: str
    secure: bool


#####################################
# Entropy Sources
#####################################


def _os_random(n: int) -> bytes:
    return os.urandom(n)


def _openssl_random(n: int) -> bytes:
    if shutil.which("openssl") is None:
        raise FileNotFoundError("openssl not found")
    result = subprocess.run(["openssl", "rand", str(n)], capture_output=True, check=True)
    if len(result.stdout) != n:
        raise OSError("openssl returned a short read")
    return result.stdout


ENTROPY_SOURCES: List[Tuple[str, Callable[[int], bytes]]] = [
    ("os", _os_random),
    ("openssl", _openssl_random),
]


def secure_random_source() -> Optional[Tuple[str, Callable[[int], bytes]]]:
    """Return the first working cryptographic source, or None."""
    for name, source in ENTROPY_SOURCES:
        try:
            source(1)
            return name, source
        except (NotImplementedError, OSError, subprocess.CalledProcessError) as e:
            logger.debug(f"Entropy source '{name}' unavailable: {e}")
    return None


def _timestamp_stream() -> Iterator[int]:
    seed = str(time.time_ns()).encode()
    counter = 0
    while True:
        yield from hashlib.sha256(seed + counter.to_bytes(8, "big")).digest()
        counter += 1


def _draw(charset: str, length: int, random_bytes: Callable[[int], bytes]) -> str:
    # Rejection sampling keeps every character equally likely.
    limit = 256 - (256 % len(charset))
    chars: List[str] = []
    while len(chars) < length:
        for byte in random_bytes(max(length * 2, 16)):
            if byte < limit:
                chars.append(charset[byte % len(charset)])
                if len(chars) == length:
                    break
    return "".join(chars)


#####################################
# Public API
#####################################


def generate_secret(
    length: int = 32, charset: str = DEFAULT_CHARSET, allow_insecure: bool = False
) -> Secret:
    if length < 1:
        raise ValidationError(f"Password length must be positive: {length}")
    if not charset or len(set(charset)) > 256:
        raise ValidationError("Character set must contain between 1 and 256 characters")
    charset = "".join(dict.fromkeys(charset))

    found = secure_random_source()
    if found:
        name, source = found
        return Secret(_draw(charset, length, source), name, True)

    if not allow_insecure:
        raise InsecureEntropyError(
            "No secure random source available (os.urandom and openssl both failed)"
        )
    logger.error(
        "INSECURE: no cryptographic random source available; "
        "generating a predictable timestamp-derived secret. Rotate it immediately."
    )
    stream = _timestamp_stream()
    value = _draw(charset, length, lambda n: bytes(next(stream) for _ in range(n)))
    return Secret(value, INSECURE_SOURCE, False)


def generate_password(length: int = 16, charset: str = DEFAULT_CHARSET) -> str:
    """Return a random password; raises InsecureEntropyError rather than degrade."""
    return generate_secret(length, charset).value


#####################################
# SSH
#####################################


def harden_sshd_config(text: str, settings: Optional[Dict[str, str]] = None) -> str:
    """
    Apply hardening directives to the contents of an sshd_config.

    Existing (and commented-out) occurrences of each key in the global
    section are removed and the new values are written just before the first
    ``Match`` block, so they are never scoped to a match.
    """
    settings = settings or SSH_HARDENING_SETTINGS
    lines = text.splitlines()
    match_at = next(
        (i for i, line in enumerate(lines) if re.match(r"^\s*Match\s", line)), len(lines)
    )
    head, tail = lines[:match_at], lines[match_at:]
    patterns = [re.compile(rf"^\s*#*\s*{re.escape(key)}\b", re.IGNORECASE) for key in settings]
    head = [line for line in head if not any(p.match(line) for p in patterns)]
    head += [f"{key} {value}" for key, value in settings.items()]
    return "\n".join(head + tail) + "\n"


def validate_ssh_public_key(key: str) -> bool:
    parts = (key or "").strip().split()
    if len(parts) < 2 or parts[0] not in SSH_KEY_TYPES:
        return False
    try:
        blob = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError):
        return False
    # The blob starts with the length-prefixed key type.
    if len(blob) < 4:
        return False
    type_len = int.from_bytes(blob[:4], "big")
    return blob[4 : 4 + type_len].decode("ascii", "replace") == parts[0]
