"""auth/ -- Identity and access-control core for idcore.

Layer rule: auth/ imports only stdlib + third-party libraries and core.config.
It does NOT import from api/ or notify/ (the Notifier contract is only
referenced for type checking).
api/ imports from auth/, not the other way around.
"""
