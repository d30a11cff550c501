"""ShiftDeck CLI commands."""
