import random
import secrets
import uuid

ADJECTIVES = [
    'swift', 'brave', 'golden', 'silver', 'crimson', 'azure', 'emerald', 'fierce',
    'noble', 'stellar', 'thunder', 'frost', 'iron', 'steel', 'blazing', 'rising',
    'wild', 'clever', 'bold', 'daring', 'fearless', 'valiant', 'sunday', 'midnight'
]

NOUNS = [
    'kickoff', 'volley', 'header', 'striker', 'keeper', 'winger', 'derby', 'pitch',
    'corner', 'rebound', 'dribble', 'tackle', 'sweeper', 'libero', 'playmaker', 'falcon',
    'eagle', 'wolf', 'lion', 'tiger', 'panther', 'comet', 'cyclone', 'tempest'
]


def generate_game_id() -> str:
    """Readable public id like 'crimson-derby-3f9a'."""
    adj = random.choice(ADJECTIVES)
    noun = random.choice(NOUNS)
    return f"{adj}-{noun}-{uuid.uuid4().hex[:4]}"


def generate_share_token(nbytes: int = 32) -> str:
    """Opaque capability string granting public access to one game."""
    return secrets.token_hex(nbytes)


def generate_registration_token(nbytes: int = 32) -> str:
    """Personal capability for one registration: view it and cancel it."""
    return secrets.token_hex(nbytes)
