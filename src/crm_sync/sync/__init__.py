"""RD Station reconciliation engine -- incremental import of organizations, contacts and deals.

Provides parsers and normalizers for heterogeneous RD Station payloads,
the CRMStore contract with its PostgreSQL implementation, identity
resolution (links, natural keys, fuzzy deal matching), the upsert engine
with registry enrichment, and the cursor/job orchestrator plus its
multi-round runner.
"""
