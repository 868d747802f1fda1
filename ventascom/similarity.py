# Similarity - normalized string similarity used by all fuzzy matching
# Cheap rules first (exact, containment, prefix), edit distance last

import re
import unicodedata

from rapidfuzz import distance


def normalize(text: str) -> str:
    """Lowercase, trim, fold accents and collapse inner whitespace."""
    if not text:
        return ""
    folded = unicodedata.normalize('NFKD', text)
    folded = ''.join(c for c in folded if not unicodedata.combining(c))
    return re.sub(r'\s+', ' ', folded.lower()).strip()


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit cost insert/delete/substitute."""
    return distance.Levenshtein.distance(a, b)


def score(a: str, b: str) -> float:
    """
    Similarity in [0, 1]. Symmetric; score(x, x) == 1, score('', '') == 1,
    score('', non_empty) == 0.
    """
    s1, s2 = normalize(a), normalize(b)

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    shorter, longer = (s1, s2) if len(s1) <= len(s2) else (s2, s1)
    min_len, max_len = len(shorter), len(longer)

    if shorter in longer:
        return 0.8 + 0.2 * (min_len / max_len)

    # Unreachable after the containment rule, kept so the rule order stays explicit
    if longer.startswith(shorter) and min_len >= 3:
        return 0.85

    similarity = 1 - levenshtein(s1, s2) / max_len
    # Common letter swaps in chat text (b/v, s/z, ll/y)
    if min_len > 3 and similarity > 0.6:
        similarity = min(1.0, similarity + 0.1)
    return similarity
