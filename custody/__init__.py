"""Identity-bound custodial token sessions for chat users."""
