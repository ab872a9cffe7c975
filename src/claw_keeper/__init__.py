"""Sandbox keeper for the assistant gateway and its durable state."""
