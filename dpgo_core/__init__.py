"""Single-robot building blocks for rank-relaxed pose-graph optimisation.

This package provides:
- A g2o reader producing relative SE(d) measurements
- Odometry and chordal trajectory initialisation
- The per-robot pose graph and its quadratic data matrices
- A Riemannian gradient solver for the local quadratic problem
- GNC/TLS robust weights and robust single rotation/pose averaging
- An optional GTSAM centralised reference solve
"""
__all__ = ["loader", "initialization", "pose_graph", "quadratic", "robust", "reference"]
__version__ = "0.1.0"
