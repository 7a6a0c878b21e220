"""Test suite for ngo_payments."""
