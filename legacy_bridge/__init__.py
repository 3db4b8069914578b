"""Legacy platform → new platform data bridge."""
