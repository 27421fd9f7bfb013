"""Bundled callable workflow templates (package data)."""
