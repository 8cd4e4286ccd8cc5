#!/usr/bin/env python3
"""
Create a new backend fee-payer key for the swap engine.
IMPORTANT: Save the private key securely!
"""

import base58
from solders.keypair import Keypair

keypair = Keypair()

# Private key in base58 format (needed for .env)
private_key_base58 = base58.b58encode(bytes(keypair)).decode('utf-8')
public_key = str(keypair.pubkey())

print("=" * 60)
print("NEW BACKEND KEY CREATED")
print("=" * 60)
print("\nPublic Address (Public Key):")
print(public_key)
print("\nPrivate Key (base58):")
print(private_key_base58)
print("\n" + "=" * 60)
print("IMPORTANT:")
print("1. Save the private key in a secure place!")
print("2. Add it to .env as BACKEND_WALLET_PRIVATE_KEY")
print("3. Set this address as the vault authority when users create vaults")
print("4. Fund it with SOL: it pays transaction fees and token account rent")
print("5. NEVER publish the private key!")
print("=" * 60)
