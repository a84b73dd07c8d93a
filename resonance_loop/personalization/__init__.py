"""Personalization package for feedback-driven adaptation.

Contains the data models, signal normalization, feedback fusion, candidate
selection, learning-weight updates and the entropy-based harmonizer.
"""
