"""
Incident Ledger
AI module: narrative generation for incidents.

Submodules:
    - generator: text generator backends (Ollama HTTP, local stub)
    - prompts: versioned prompt templates
    - enrichment_outputs: typed outputs per enrichment job type
"""
