"""Breaking-point load test for the chat addToChat endpoint."""
