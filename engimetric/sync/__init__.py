"""Sync state tracking, orchestration and the tracked-sync runner."""
