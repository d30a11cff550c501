"""Command-line interface for ShiftDeck."""
