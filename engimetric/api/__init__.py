"""HTTP surface: user-triggered syncs and metrics reads."""
