"""
Scoring pipeline for the matching feature.
"""
