"""Match resolution: find the stored record an incoming conversation belongs to."""

from collections.abc import Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher

from chat_stash.logging import get_logger
from chat_stash.models import Conversation, MatchKind, Message
from chat_stash.storage.store import PartitionSnapshot, StoredRecord
from chat_stash.sync.fingerprint import normalize_content, normalize_title

logger = get_logger("matcher")

DEFAULT_THRESHOLD = 0.6

# Weights of the similarity components; they sum to 1.0
PREFIX_WEIGHT = 0.6
TIME_WEIGHT = 0.25
TITLE_WEIGHT = 0.15

DEFAULT_TIME_WINDOW = 86400

# Scores this close to the threshold are logged as near-threshold decisions
NEAR_THRESHOLD_MARGIN = 0.05


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one incoming conversation."""

    kind: MatchKind
    record: StoredRecord | None = None
    score: float | None = None

    @property
    def matched(self) -> bool:
        return self.record is not None


def contents_compatible(a: Message, b: Message) -> bool:
    """True if both messages have the same role and one content extends the other."""
    if a.role != b.role:
        return False
    left = normalize_content(a.content)
    right = normalize_content(b.content)
    return left.startswith(right) or right.startswith(left)


def common_prefix_length(a: Sequence[Message], b: Sequence[Message]) -> int:
    """Number of leading messages the two sequences agree on."""
    length = 0
    for left, right in zip(a, b):
        if not contents_compatible(left, right):
            break
        length += 1
    return length


def similarity(
    a: Conversation,
    b: Conversation,
    time_window: int = DEFAULT_TIME_WINDOW,
) -> float:
    """Score in [0, 1] of how likely two captures are the same conversation.

    Weighted sum of the common message prefix (relative to the shorter
    sequence), creation-time proximity within time_window, and title
    similarity.
    """
    shorter = min(len(a.messages), len(b.messages))
    prefix = common_prefix_length(a.messages, b.messages) / shorter if shorter else 0.0

    delta = abs(a.created_at - b.created_at)
    time_score = max(0.0, 1.0 - delta / time_window)

    title_a = normalize_title(a.title)
    title_b = normalize_title(b.title)
    if title_a == title_b:
        title_score = 1.0
    else:
        title_score = SequenceMatcher(None, title_a, title_b).ratio()

    return PREFIX_WEIGHT * prefix + TIME_WEIGHT * time_score + TITLE_WEIGHT * title_score


class MatchResolver:
    """Resolves incoming conversations against one partition of the store.

    Exact matches come from the content-hash index. Otherwise the members of
    the fuzzy buckets are scored and the best one is accepted if it reaches
    the threshold (the boundary is inclusive).
    """

    def __init__(
        self,
        snapshot: PartitionSnapshot,
        threshold: float = DEFAULT_THRESHOLD,
        time_window: int = DEFAULT_TIME_WINDOW,
    ) -> None:
        self._snapshot = snapshot
        self._threshold = threshold
        self._time_window = time_window

    @property
    def threshold(self) -> float:
        return self._threshold

    def resolve(self, candidate: Conversation) -> MatchResult:
        exact = self._snapshot.find_by_hash(candidate.content_hash)
        if exact is not None:
            return MatchResult(kind=MatchKind.EXACT_DUPLICATE, record=exact, score=1.0)

        best: StoredRecord | None = None
        best_score = -1.0
        for record in self._snapshot.bucket_members(candidate.fuzzy_key):
            score = similarity(candidate, record.conversation, self._time_window)
            if best is None or self._ranks_higher(score, record, best_score, best):
                best, best_score = record, score

        if best is None:
            return MatchResult(kind=MatchKind.NEW)

        if abs(best_score - self._threshold) <= NEAR_THRESHOLD_MARGIN:
            logger.debug(
                "Near-threshold match score: candidate=%s best=%s score=%.3f threshold=%.3f",
                candidate.conversation_id,
                best.id,
                best_score,
                self._threshold,
            )

        if best_score >= self._threshold:
            return MatchResult(kind=MatchKind.PARTIAL_OVERLAP, record=best, score=best_score)
        return MatchResult(kind=MatchKind.NEW, score=best_score)

    @staticmethod
    def _ranks_higher(score: float, record: StoredRecord, best_score: float, best: StoredRecord) -> bool:
        # Ties go to the most recently updated record, then the smallest id
        if score != best_score:
            return score > best_score
        updated, best_updated = record.conversation.updated_at, best.conversation.updated_at
        if updated != best_updated:
            return updated > best_updated
        return record.id < best.id
