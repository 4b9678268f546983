import random
import string
import uuid

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
INVITE_CODE_LENGTH = 6


def generate_invite_code(rng: random.Random = None) -> str:
    """Generate a team invite code like 'K7Q2ZD'"""
    rng = rng or random
    return ''.join(rng.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def normalize_invite_code(code: str) -> str:
    return (code or '').strip().upper()


def generate_event_code() -> str:
    """Generate a short public event code like 'EV-3F9A1C'"""
    return f"EV-{uuid.uuid4().hex[:6].upper()}"


def match_id(round_num: int, match_num: int) -> str:
    return f"r{round_num}_m{match_num}"
