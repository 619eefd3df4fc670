"""User directory: the public profile fields shown next to a conversation.

Accounts themselves are owned by the marketplace's auth service; this module
only mirrors the display fields (name, avatar, role) the messaging views need.
"""
