"""
Incident Ledger
Blueprint registry.

Every blueprint registers its own NotFoundError / ValidationError /
ConflictError handlers; the app factory registers them in create_app().
"""
