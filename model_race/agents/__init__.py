"""LangGraph workflow agents for the model race."""
