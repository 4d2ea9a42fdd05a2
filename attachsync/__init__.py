"""Local attachment upload agent."""
