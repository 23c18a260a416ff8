"""OpenSearch metrics checker and timeout-risk classifier."""
