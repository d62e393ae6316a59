"""
ICP Discovery Engine - Descriptive Analysis & Lead Scoring
==========================================================
Two batch pipelines over a workspace's CRM data:
  Discovery: readiness check, closed-deal feature matrix, persona and
             committee mining, company patterns, scoring weights
  Scoring:   open-deal and contact feature vectors, point-based scores
             with grade and change tracking
"""

__version__ = "1.0.0"
__author__ = "ICP Discovery Team"
