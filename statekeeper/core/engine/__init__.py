"""Engine — the state coordinator."""
