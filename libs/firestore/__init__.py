"""Firestore persistence."""
