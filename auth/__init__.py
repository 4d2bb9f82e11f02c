"""auth/ -- Authentication orchestration engine for Warden.

Layer rule: auth/ imports only stdlib + third-party libraries, plus core/
for process settings. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
