"""Credential data model, suite resolution and issuance."""
