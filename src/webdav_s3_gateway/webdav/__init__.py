"""WebDAV transport and multistatus parsing."""
