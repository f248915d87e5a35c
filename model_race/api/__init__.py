"""REST API for the model race."""
