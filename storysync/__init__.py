"""Host-authoritative shared storytelling sessions."""
