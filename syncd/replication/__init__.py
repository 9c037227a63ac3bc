"""
Replication subsystem for keeping a KV bucket consistent across sites.

Implements Last-Writer-Wins conflict resolution over a scalar logical clock,
operation streaming through the replication channel and periodic
anti-entropy reconciliation against a peer site.
"""
