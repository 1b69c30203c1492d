# ============================================================================
# pivot/__init__.py
# Package Marker for the Obstacle Mutation Engine
# ============================================================================
#
# PURPOSE:
# When an automated attack attempt is blocked (WAF, filter, rate limit...),
# the pivot engine classifies the obstacle, picks a lane, mutates the
# payload, replays it against the target and scores the response change.
#
# LAYOUT:
# - base/: configuration and the error taxonomy
# - contracts/: enums and pydantic data contracts shared by every area
# - mutate/: mutation families and the family registry
# - net/: the probe executor (replays mutated requests with httpx)
# - diff/: baseline statistics and response deltas
# - scoring/: signal weights, attempt ledger and the deterministic scorer
# - routing/: signature library, routing state store, matcher and router
# - anomaly/: append-only anomaly buffer
# - ai/: the freestyle (LLM) collaborator
# - review/: post-engagement review
# - engine/: the per-obstacle orchestrator
#
# ============================================================================

__version__ = "0.4.0"
