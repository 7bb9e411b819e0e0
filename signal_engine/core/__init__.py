"""Configuration, data models, the decision pipeline and the cycle scheduler."""
