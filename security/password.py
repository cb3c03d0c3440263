import os

import bcrypt

# 12 in production; tests lower it through the environment
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# bcrypt only reads this many bytes and refuses longer input
MAX_PASSWORD_BYTES = 72

# Verified against when the e-mail is unknown, so a miss costs the same
# bcrypt work as a wrong password.
_DUMMY_HASH = bcrypt.hashpw(b"nagarsewak-timing-equalizer", bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")

# Stored on tombstoned accounts; never produced by bcrypt, so nothing verifies against it
UNUSABLE_PASSWORD = "!deleted"

def password_too_long(plain_password: str) -> bool:
    return len(plain_password.encode("utf-8")) > MAX_PASSWORD_BYTES

def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")
    if password_too_long(plain_password):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")

def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash or not password_hash.startswith("$2"):
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        return False

def burn_verification_time(plain_password: str) -> None:
    try:
        bcrypt.checkpw((plain_password or "-").encode("utf-8"), _DUMMY_HASH.encode("utf-8"))
    except ValueError:
        pass
