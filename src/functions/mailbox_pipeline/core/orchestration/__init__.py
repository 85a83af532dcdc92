"""Configuration loading and runtime wiring."""
