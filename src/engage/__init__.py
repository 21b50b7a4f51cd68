"""Engagement-scoring engine: badges, coin ledger, streaks and leaderboard."""
