"""Wallet and chain access for ProofPay.

Provides the two external capabilities the core consumes: a wallet provider
(connect, disconnect, sign, account-change notifications) and chain data
(token decimals, transfer subscriptions, transaction status). Both are
declared as protocols with one concrete implementation each: an encrypted
eth-account keystore and a web3.py multi-chain client.
"""
