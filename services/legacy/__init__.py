"""Legacy route table service."""
