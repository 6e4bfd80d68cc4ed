from __future__ import annotations

# Token amounts are integers in the smallest unit (18 decimals).
TOKEN_DECIMALS = 18
ONE_TOKEN = 10**TOKEN_DECIMALS

BPS_DENOM = 10_000

# Season clock: 2024-01-01T00:00:00Z, one week per season.
DEFAULT_SEASON_EPOCH_S = 1_704_067_200
DEFAULT_SEASON_LENGTH_S = 7 * 24 * 60 * 60

# Reward table.
DEFAULT_POOL_SIZE = 2_100 * ONE_TOKEN
DEFAULT_TOP_N = 3
DEFAULT_WEIGHTS_BPS = (5_000, 3_000, 2_000)
DEFAULT_CREATOR_SHARE_BPS = 6_000

# Delegation request bounds (smallest unit).
DEFAULT_MIN_DELEGATION = 1
DEFAULT_MAX_DELEGATION = 1_000_000 * ONE_TOKEN

# Payout execution.
DEFAULT_BATCH_SIZE = 20
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CONFIRM_TIMEOUT_S = 120

# Cache freshness.
DEFAULT_STALE_TOLERANCE_BLOCKS = 10
DEFAULT_FRESHNESS_THRESHOLD_S = 30

SEASON_PHASES = ("preparing", "active", "finalizing", "completed")
DISTRIBUTION_STATUSES = ("pending", "sent", "confirmed", "failed")
PROGRESS_STATUSES = ("pending", "in_progress", "completed", "failed")
DELEGATION_SOURCES = ("ledger", "representative")
TIE_BREAK_POLICIES = ("first_delegation", "target_id")
