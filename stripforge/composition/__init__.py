"""Panel and strip image composition."""
