"""Credential-injecting reverse proxy for AWS CodeArtifact.

Package-manager clients authenticate with a route token; the proxy picks the
matching environment, attaches a short-lived CodeArtifact token and rewrites
repository URLs in responses so clients keep talking to the proxy.
"""

__version__ = "0.1.0"
