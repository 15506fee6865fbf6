"""
Extraction of tunnel declarations from Terraform state/plan JSON documents.

Three layouts are understood:

- legacy state files (format version 3), where resources hang off
  ``modules[].resources`` and carry ``primary.attributes``;
- current state files (format version 4), with a flat ``resources`` list
  whose entries hold ``instances[].attributes``;
- the machine-readable output of ``terraform show -json``, for both state
  (``values``) and saved plans (``planned_values``).

Binary plan files must be converted with ``terraform show -json`` first.
"""
import json

from .exceptions import ConfigurationError, PlanError
from .spec import TunnelSpec
from .util import debug

#: Resource type whose instances describe tunnels.
RESOURCE_TYPE = "ssh_tunnel"


def read_plan(path, resource_type=RESOURCE_TYPE, errors=None):
    """
    Load tunnel declarations from the JSON document at ``path``.

    :returns: list of `.TunnelSpec`, in document order.
    :raises PlanError: if the file can't be read or understood.
    """
    try:
        with open(path, encoding="utf-8") as fd:
            return load_plan(fd, resource_type=resource_type, errors=errors)
    except OSError as e:
        raise PlanError("Error loading file: {}".format(e)) from e


def load_plan(fd, resource_type=RESOURCE_TYPE, errors=None):
    """
    Like `read_plan`, but reading from an open file-like object.
    """
    try:
        data = json.load(fd)
    except ValueError as e:
        raise PlanError("Error reading file: {}".format(e)) from e
    return parse_plan(data, resource_type=resource_type, errors=errors)


def parse_plan(data, resource_type=RESOURCE_TYPE, errors=None):
    """
    Extract `.TunnelSpec` objects from an already-decoded document.

    :param list errors:
        If given, malformed tunnel declarations are appended to it (as
        `.ConfigurationError`) and skipped, so the remaining tunnels can
        still be used. Otherwise the first one raises `.PlanError`.
    """
    if not isinstance(data, dict):
        raise PlanError("Error reading file: top level is not an object")
    if "planned_values" in data or "values" in data:
        root = (data.get("planned_values") or data.get("values") or {}).get(
            "root_module", {}
        )
        records = _walk_show_module(root, resource_type)
    elif isinstance(data.get("modules"), list):
        records = _walk_legacy_state(data, resource_type)
    elif isinstance(data.get("resources"), list):
        records = _walk_state(data, resource_type)
    else:
        raise PlanError("Error reading file: unrecognized document layout")
    specs = []
    for identifier, attributes in records:
        try:
            specs.append(TunnelSpec.from_attributes(identifier, attributes))
        except ConfigurationError as e:
            if errors is None:
                raise PlanError(str(e)) from e
            errors.append(e)
    debug("Found {} tunnel(s)".format(len(specs)))
    return specs


def _walk_legacy_state(data, resource_type):
    for module in data["modules"]:
        path = module.get("path") or ["root"]
        prefix = "".join("module.{}.".format(x) for x in path[1:])
        for key, resource in (module.get("resources") or {}).items():
            if resource.get("type") != resource_type:
                continue
            attributes = (resource.get("primary") or {}).get("attributes") or {}
            yield prefix + key, attributes


def _walk_state(data, resource_type):
    for resource in data["resources"]:
        if resource.get("type") != resource_type:
            continue
        if resource.get("mode", "managed") != "managed":
            continue
        address = "{}.{}".format(resource_type, resource.get("name"))
        if resource.get("module"):
            address = "{}.{}".format(resource["module"], address)
        for instance in resource.get("instances") or []:
            identifier = address
            if "index_key" in instance:
                identifier = "{}[{}]".format(address, json.dumps(instance["index_key"]))
            yield identifier, instance.get("attributes") or {}


def _walk_show_module(module, resource_type):
    for resource in module.get("resources") or []:
        if resource.get("type") != resource_type:
            continue
        if resource.get("mode", "managed") != "managed":
            continue
        yield resource.get("address"), resource.get("values") or {}
    for child in module.get("child_modules") or []:
        yield from _walk_show_module(child, resource_type)
