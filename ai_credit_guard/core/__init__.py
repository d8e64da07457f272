"""
Core modules for AI Credit Guard.

This package contains pricing, identity resolution, quota guardrails and
the request orchestration that ties them to the credit ledger.
"""
