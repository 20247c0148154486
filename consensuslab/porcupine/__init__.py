"""Linearizability checking of concurrent operation and event histories."""