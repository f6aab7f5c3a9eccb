"""Report download service for bulk credential issuance."""
