"""
Moments Intelligence Engine

Incremental pivotal-moment analysis over a catalog of AI companies and
technologies.

LAYERS:
=======
- contracts:      frozen domain types shared by every layer
- catalog:        filesystem catalog loader
- analysis:       change detection, correlation, classification
- storage:        moment files and content hashes
- monitoring:     provider health and failover
- observability:  audit log and metrics
- api:            FastAPI server

The model-facing side lives in the sibling `adapter` package.
Import submodules directly; this package does not re-export them.
"""
