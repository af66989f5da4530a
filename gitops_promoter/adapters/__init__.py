"""
Adapters — the engine's only route to git, GitHub, ArgoCD and registries.
"""
