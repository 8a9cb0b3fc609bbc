"""Read access to teams and their tracked members."""
