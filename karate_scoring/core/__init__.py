from .locks import hold, round_key, performance_key, match_key, reset_locks
