"""
AI decision layer.

Tagged decision types, the fail-closed response parser and the decision
source clients. The decision source only proposes; validation, risk caps and
the executor decide what actually reaches the exchange.
"""
