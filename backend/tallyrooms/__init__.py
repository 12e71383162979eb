"""Room directory, membership and real-time chat for Beer Tally."""
