"""Service Group Provisioner (SGP).

Single-node provisioner for one managed container group that demonstrates:
 - a reverse proxy, an API and a web frontend deployed as one unit
 - private network fabric, registry and identity declared as a resource graph
 - blue/green revisions gated on startup probes
 - whole-group scaling and self-healing via a reconciler loop
"""
