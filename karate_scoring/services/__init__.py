from .score_store import ScoreStore
from .kata_aggregator import aggregate_kata_scores, breakdown_kata_scores, KataBreakdown
from .kumite_resolver import TallySnapshot, KumiteDecision, score_participant, resolve_match
