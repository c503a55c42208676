"""Question bank data reached by the built-in agent tools."""
