"""Operator CLI for datavault."""
