"""Telehealth consultation lifecycle service."""
