"""users/ -- User directory and follow graph for the account service.

Layer rule: users/ imports from auth/ and core/ only.
"""
