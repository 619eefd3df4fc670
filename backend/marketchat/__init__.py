"""Marketchat: one-to-one buyer/seller messaging for the furniture marketplace."""
