"""
karate_scoring
Competition scoring and elimination advancement engine for Kata and Kumite.
"""
