"""Core domain — models, services, engine. No UI code lives here."""
