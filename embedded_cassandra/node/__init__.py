"""Launching, supervising and stopping the Cassandra process."""
