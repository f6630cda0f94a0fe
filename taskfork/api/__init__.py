"""Clients for the network collaborators the engine consumes."""
