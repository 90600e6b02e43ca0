"""Tools for managing simulation configurations.

Each simulation is configured by a flat dictionary whose keys use a dotted
notation, e.g. 'sim.seed' or 'sim.log.level'. Keys used by rulesim itself are
prefixed with 'sim.'; model builders may add their own keys but should avoid
the 'sim.' prefix.

Consumers read keys with ``config.setdefault(key, default)``, so after a
simulation the dictionary records the effective value of every key that was
used.

"""
from typing import Any, Dict, Iterable, Tuple

import yaml


class ConfigError(Exception):
    """Exception raised for a variety of configuration errors."""


def default_config() -> Dict[str, Any]:
    """A new configuration dict holding the engine's default values."""
    return {
        'sim.seed': None,
        'sim.duration': 0,
        'sim.confluent.policy': 'external_first',
        'sim.records.undelivered': False,
        'sim.log.enable': False,
        'sim.log.file': 'sim.log',
        'sim.log.level': 'INFO',
        'sim.db.enable': False,
        'sim.db.file': 'sim.sqlite',
        'sim.vcd.enable': False,
        'sim.vcd.dump_file': 'sim.vcd',
        'sim.vcd.timescale': '1 s',
        'sim.vcd.resolution': 1,
        'sim.workspace': '.',
        'sim.workspace.overwrite': False,
        'sim.result.file': None,
        'sim.config.file': None,
    }


def apply_user_overrides(config: Dict[str, Any], overrides: Iterable[Tuple[str, str]]) -> None:
    """Apply user-provided overrides to a configuration.

    Each user-provided key must already exist in `config`. The
    :func:`fuzzy_lookup()` function is used to verify that the user-provided
    key exists unambiguously in `config`.

    Values are parsed as YAML scalars or collections (so ``10``, ``2.5``,
    ``true``, ``[a, b]`` and ``.inf`` work) and must be type-compatible with
    the existing (default) value in `config`.

    :param dict config: Configuration dictionary to modify.
    :param list overrides: List of user-provided (key, value text) tuples.
    :raises ConfigError: For unknown keys or incompatible values.

    """
    for user_key, user_text in overrides:
        key, current_value = fuzzy_lookup(config, user_key)
        config[key] = _parse_value(user_text, current_value)


def _parse_value(text: str, current_value: Any) -> Any:
    try:
        value = yaml.safe_load(text)
    except yaml.YAMLError:
        if isinstance(current_value, str):
            return text
        raise ConfigError(f'Failed to parse value "{text}"') from None

    if current_value is None or value is None:
        return value
    coerce_type = type(current_value)
    if isinstance(value, coerce_type):
        return value
    if coerce_type is str:
        return text
    if coerce_type is bool:
        raise ConfigError(f'Failed to coerce "{text}" to bool')
    try:
        return coerce_type(value)
    except (ValueError, TypeError):
        raise ConfigError(
            f'Failed to coerce "{text}" to {coerce_type.__name__}'
        ) from None


def fuzzy_lookup(config: Dict[str, Any], fuzzy_key: str) -> Tuple[str, Any]:
    """Lookup a config key/value using a partially specified (fuzzy) key.

    The lookup will succeed iff the provided `fuzzy_key` unambiguously matches
    the tail of a [fully-qualified] key in the `config` dict.

    :param dict config: Configuration dict in which to lookup `fuzzy_key`.
    :param str fuzzy_key: Partially specified key to lookup in `config`.
    :returns:
        `(key, value)` tuple. The returned key is the regular, fully-qualified
        key name, not the provided `fuzzy_key`.
    :raises ConfigError: For non-matching `fuzzy_key`.

    """
    if fuzzy_key in config:
        return fuzzy_key, config[fuzzy_key]
    suffix_matches = []
    split_matches = []
    for k in config:
        if k.rsplit('.', 1)[-1] == fuzzy_key:
            split_matches.append(k)
        elif k.endswith(fuzzy_key):
            suffix_matches.append(k)
    if len(split_matches) == 1:
        k = split_matches[0]
        return k, config[k]
    elif len(suffix_matches) == 1 and not split_matches:
        k = suffix_matches[0]
        return k, config[k]
    elif not suffix_matches + split_matches:
        raise ConfigError(f'Invalid config key "{fuzzy_key}"')
    else:
        raise ConfigError(
            f'Ambiguous config key "{fuzzy_key}"; possible matches: '
            f'{", ".join(split_matches + suffix_matches)}'
        )
