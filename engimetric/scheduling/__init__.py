"""Daily slot scheduling of team syncs plus the stale-sync reaper."""
