"""
Shared test constants.

Ledger payloads carry 32-byte public keys in base58, so tests use fixed,
easily told-apart keys built from a repeated byte.
"""

from place_server.canvas.keys import b58encode

WALLET = b58encode(bytes([7]) * 32)
PAINTER = b58encode(bytes([9]) * 32)
CREATOR = b58encode(bytes([11]) * 32)
OTHER_WALLET = b58encode(bytes([13]) * 32)

PROGRAM_ID = "4j29Do6VWdMhfLBdi4n3AeWdVXNEzJNG72sFVUe9cUSe"
DELEGATION_PROGRAM_ID = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"
