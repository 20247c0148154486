"""Raft peer state, messages, persistence and replication transitions."""