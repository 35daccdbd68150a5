"""auth/ -- Session lifecycle package for Marquee.

Layer rule: auth/ imports from core/ and cache/ only (plus stdlib and
third-party libraries). cache/ may import auth.models and nothing else
from here. main.py and any UI layer import from auth/, not the other way
around.
"""
