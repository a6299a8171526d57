"""HTTP clients for the external signer and identity resolver."""
