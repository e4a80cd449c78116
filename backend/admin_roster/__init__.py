"""Admin roster package

Live, optimistic view over all profiles for the administrative surface.
"""
