"""Application service layer for conversations, messages and notifications."""
