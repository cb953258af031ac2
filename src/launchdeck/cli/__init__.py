"""Command-line interface for LaunchDeck."""
