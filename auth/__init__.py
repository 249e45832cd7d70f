"""auth/ -- Authentication and authorization core for CaseGate.

Layer rule: auth/ imports stdlib, third-party libraries, and core/ (config
and clock). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
