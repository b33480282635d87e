"""S3 protocol layer: signatures, XML, listing translation and operations."""
