"""
Single-elimination bracket built from competition participant ids.

The bracket is stored as a JSON document on the competition:

    {
        "matches": [{"id": "r1_m1", "round": 1, "participant1": 4,
                     "participant2": 9, "winner_id": None, "score": None,
                     "completed": False}, ...],
        "current_round": 1,
        "total_rounds": 3
    }

Only the current round is generated; later rounds are appended by
`next_round` once every match of the current one has a winner.
"""
import math
import random
from typing import Dict, List, Optional

from .codes import match_id

BYE_SCORE = 'BYE'


def total_rounds(participant_count: int) -> int:
    if participant_count < 2:
        return 0
    return math.ceil(math.log2(participant_count))


def pair(participant_ids: List[int], round_num: int) -> List[Dict]:
    """Pair ids consecutively; an unpaired last id gets a completed bye match."""
    matches = []
    for i in range(0, len(participant_ids), 2):
        number = len(matches) + 1
        if i + 1 < len(participant_ids):
            matches.append({
                'id': match_id(round_num, number),
                'round': round_num,
                'participant1': participant_ids[i],
                'participant2': participant_ids[i + 1],
                'winner_id': None,
                'score': None,
                'completed': False,
            })
        else:
            matches.append({
                'id': match_id(round_num, number),
                'round': round_num,
                'participant1': participant_ids[i],
                'participant2': None,
                'winner_id': participant_ids[i],
                'score': BYE_SCORE,
                'completed': True,
            })
    return matches


def build_first_round(participant_ids: List[int], rng: random.Random = None) -> Dict:
    rng = rng or random.Random()
    shuffled = list(participant_ids)
    rng.shuffle(shuffled)
    return {
        'matches': pair(shuffled, 1),
        'current_round': 1,
        'total_rounds': total_rounds(len(shuffled)),
    }


def find_match(bracket: Dict, match_id_: str) -> Optional[Dict]:
    for match in (bracket or {}).get('matches', []):
        if match.get('id') == match_id_:
            return match
    return None


def round_matches(bracket: Dict, round_num: int) -> List[Dict]:
    return [m for m in bracket.get('matches', []) if m.get('round') == round_num]


def round_complete(bracket: Dict) -> bool:
    matches = round_matches(bracket, bracket.get('current_round', 1))
    return bool(matches) and all(m.get('completed') for m in matches)


def round_winners(bracket: Dict) -> List[int]:
    matches = round_matches(bracket, bracket.get('current_round', 1))
    return [m['winner_id'] for m in matches if m.get('winner_id') is not None]


def next_round(bracket: Dict) -> List[Dict]:
    """
    Append the next round's matches to `bracket` (in place) and bump the
    current round. Winners keep the order of the matches they won.
    """
    round_num = bracket.get('current_round', 1) + 1
    matches = pair(round_winners(bracket), round_num)
    bracket['matches'].extend(matches)
    bracket['current_round'] = round_num
    return matches
