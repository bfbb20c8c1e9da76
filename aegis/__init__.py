# aegis/__init__.py
"""
Aegis URL risk assessment engine.

- Structural URL heuristics (services/url_analyzer.py)
- Reputation lookup (services/threat_intel.py)
- Adaptive trust learning (services/trust_learner.py)
- Decision engine tying them together (pipelines/decision_engine.py)
- HTTP command surface (api/server.py)
"""
