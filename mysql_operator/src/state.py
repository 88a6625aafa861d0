from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

CLUSTER_GROUP = "mysql.presslabs.org"
CLUSTER_VERSION = "v1alpha1"
CLUSTER_API_VERSION = f"{CLUSTER_GROUP}/{CLUSTER_VERSION}"
CLUSTER_KIND = "MysqlCluster"
CLUSTER_PLURAL = "mysqlclusters"
CLUSTER_CRD_NAME = f"{CLUSTER_PLURAL}.{CLUSTER_GROUP}"

KIND_CONFIG_MAP = "ConfigMap"
KIND_SERVICE = "Service"
KIND_POD_DISRUPTION_BUDGET = "PodDisruptionBudget"
KIND_STATEFUL_SET = "StatefulSet"
KIND_SECRET = "Secret"

MANAGED_BY = "mysql-operator"
MANAGED_BY_SELECTOR = f"app.kubernetes.io/managed-by={MANAGED_BY}"
ROLE_LABEL = f"{CLUSTER_GROUP}/role"

CONFIG_REV_ANNOTATION = "config_rev"
SECRET_REV_ANNOTATION = "secret_rev"

DEFAULT_IMAGE = "percona:5.7"
DEFAULT_MIN_AVAILABLE = "50%"
MYSQL_PORT = 3306


@dataclass(frozen=True)
class DependentResourceSet:
    """Desired manifests for every object a cluster owns.

    Fields are ordered the way they must be applied: the ConfigMap first so
    its revision can be stamped on the StatefulSet, the StatefulSet last.
    """

    config_map: dict[str, Any]
    headless_service: dict[str, Any]
    master_service: dict[str, Any]
    pod_disruption_budget: dict[str, Any]
    stateful_set: dict[str, Any]

    def __iter__(self) -> Iterator[dict[str, Any]]:
        yield self.config_map
        yield self.headless_service
        yield self.master_service
        yield self.pod_disruption_budget
        yield self.stateful_set


def resource_name(cluster_name: str, suffix: str = "") -> str:
    """Name a dependent object by the ``<cluster-name>-mysql[-suffix]`` convention."""
    base = f"{cluster_name}-mysql"
    return f"{base}-{suffix}" if suffix else base


def cluster_labels(cluster_name: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/name": "mysql",
        "app.kubernetes.io/instance": cluster_name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


def owner_reference(cluster: dict[str, Any]) -> dict[str, Any]:
    metadata = cluster.get("metadata") or {}
    return {
        "apiVersion": CLUSTER_API_VERSION,
        "kind": CLUSTER_KIND,
        "name": metadata.get("name", ""),
        "uid": metadata.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def render_my_cnf(mysql_conf: dict[str, Any]) -> str:
    lines = ["[mysqld]"]
    for key in sorted(mysql_conf):
        lines.append(f"{key} = {mysql_conf[key]}")
    return "\n".join(lines) + "\n"


class StateComputer:
    """Pure translation of a ``MysqlCluster`` into its dependent manifests.

    No I/O happens here.  Revision annotations that depend on live objects
    (``config_rev``/``secret_rev``) are added by the reconciler.
    """

    def __init__(self, default_image: str = DEFAULT_IMAGE) -> None:
        self.default_image = default_image

    def desired_state(self, cluster: dict[str, Any]) -> DependentResourceSet:
        metadata = cluster.get("metadata") or {}
        spec = cluster.get("spec") or {}
        name = metadata["name"]
        namespace = metadata.get("namespace", "")
        labels = cluster_labels(name)
        owners = [owner_reference(cluster)] if metadata.get("uid") else []

        def _meta(object_name: str) -> dict[str, Any]:
            meta: dict[str, Any] = {
                "name": object_name,
                "namespace": namespace,
                "labels": dict(labels),
            }
            if owners:
                meta["ownerReferences"] = [dict(ref) for ref in owners]
            return meta

        replicas = int(spec.get("replicas", 1))
        mysql_port = {"name": "mysql", "port": MYSQL_PORT, "targetPort": MYSQL_PORT}

        config_map = {
            "apiVersion": "v1",
            "kind": KIND_CONFIG_MAP,
            "metadata": _meta(resource_name(name)),
            "data": {"my.cnf": render_my_cnf(spec.get("mysqlConf") or {})},
        }
        headless_service = {
            "apiVersion": "v1",
            "kind": KIND_SERVICE,
            "metadata": _meta(resource_name(name, "nodes")),
            "spec": {
                "clusterIP": "None",
                "publishNotReadyAddresses": True,
                "selector": dict(labels),
                "ports": [dict(mysql_port)],
            },
        }
        master_service = {
            "apiVersion": "v1",
            "kind": KIND_SERVICE,
            "metadata": _meta(resource_name(name, "master")),
            "spec": {
                "type": "ClusterIP",
                "selector": {**labels, ROLE_LABEL: "master"},
                "ports": [dict(mysql_port)],
            },
        }
        pod_disruption_budget = {
            "apiVersion": "policy/v1",
            "kind": KIND_POD_DISRUPTION_BUDGET,
            "metadata": _meta(resource_name(name)),
            "spec": {
                "minAvailable": spec.get("minAvailable", DEFAULT_MIN_AVAILABLE),
                "selector": {"matchLabels": dict(labels)},
            },
        }
        stateful_set = {
            "apiVersion": "apps/v1",
            "kind": KIND_STATEFUL_SET,
            "metadata": _meta(resource_name(name)),
            "spec": {
                "replicas": replicas,
                "serviceName": resource_name(name, "nodes"),
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "containers": [
                            {
                                "name": "mysql",
                                "image": spec.get("image") or self.default_image,
                                "ports": [{"name": "mysql", "containerPort": MYSQL_PORT}],
                                "envFrom": [{"secretRef": {"name": spec.get("secretName", "")}}],
                                "volumeMounts": [
                                    {"name": "conf", "mountPath": "/etc/mysql/conf.d"}
                                ],
                            }
                        ],
                        "volumes": [
                            {"name": "conf", "configMap": {"name": resource_name(name)}}
                        ],
                    },
                },
            },
        }

        return DependentResourceSet(
            config_map=config_map,
            headless_service=headless_service,
            master_service=master_service,
            pod_disruption_budget=pod_disruption_budget,
            stateful_set=stateful_set,
        )
