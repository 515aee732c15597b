"""
Cluster bootstrap and GitOps reconciliation controller package.

Modules:
- topology: declared nodes, roles, and join state
- join: token-based node join handshake
- source / desired: declarative workload sources and the desired-state store
- diff: desired vs applied state into an ordered sync plan
- executor: bounded-concurrency plan application, owner of applied state
- watcher: drift polling loop with optional self-heal
- installer: Helm install-or-noop for platform releases
- cluster: Kubernetes API surface
- controller: component wiring and the bootstrap sequence
- api / cli: operator-facing REST surface and command line
"""

__version__ = "0.3.0"
