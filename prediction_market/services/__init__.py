"""Pure helpers shared by the flows and notification services."""
