"""Project sandbox lifecycle: image choice, provisioning, readiness, snapshots, recovery."""
