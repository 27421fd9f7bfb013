"""Read and write the consumer-side .callable-ci.yml file."""

import os

import yaml

CONFIG_FILENAME = ".callable-ci.yml"


def read_config_string(content):
    """Parse config text. Empty or non-mapping documents read as {}."""
    data = yaml.safe_load(content)
    if not isinstance(data, dict):
        return {}
    return data


def read_config(path):
    """Read a config file, returning {} if it does not exist."""
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        return read_config_string(f.read())


def write_config(path, data):
    """Write config preserving key order."""
    with open(path, "w") as f:
        f.write("# Managed by callable-ci -- edit inputs, then run `callable-ci update`\n")
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def config_path(project_dir="."):
    return os.path.join(project_dir, CONFIG_FILENAME)
