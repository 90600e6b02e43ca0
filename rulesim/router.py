"""Static port-to-port message routing between models."""
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, NamedTuple, Tuple, Union

if TYPE_CHECKING:
    from .compiler import AtomicModel


class ConnectError(Exception):
    pass


class Message(NamedTuple):
    """Output of a model on one of its ports."""

    port: str
    payload: Any


class Connector(NamedTuple):
    """Directed edge from a source model's output port to a target input port."""

    id: str
    source_model_id: str
    source_port: str
    target_model_id: str
    target_port: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Connector':
        try:
            return cls(**{field: data[field] for field in cls._fields})
        except KeyError as e:
            raise ConnectError(f'Connector {data!r} is missing {e}') from None


class RoutedMessage(NamedTuple):
    """A message on its way along one connector."""

    source_id: str
    source_port: str
    target_id: str
    target_port: str
    time: float
    payload: Any


ConnectorData = Union[Connector, Mapping[str, Any]]


class Router:
    """Resolve ``(model id, output port)`` pairs to connected input ports.

    Connectors are validated against `models` when the router is built: both
    ends must name known models and, for models that declare their ports,
    declared ports.

    :param connectors: :class:`Connector` instances or their dict form.
    :param models: Mapping of model id to model instance.

    """

    def __init__(
        self, connectors: Iterable[ConnectorData], models: Mapping[str, 'AtomicModel']
    ) -> None:
        self.connectors: List[Connector] = []
        self._routes: Dict[Tuple[str, str], List[Connector]] = {}
        ids = set()
        for data in connectors:
            connector = data if isinstance(data, Connector) else Connector.from_dict(data)
            if connector.id in ids:
                raise ConnectError(f'Duplicate connector id "{connector.id}"')
            ids.add(connector.id)
            self._validate(connector, models)
            self.connectors.append(connector)
            key = (connector.source_model_id, connector.source_port)
            self._routes.setdefault(key, []).append(connector)

    @staticmethod
    def _validate(connector: Connector, models: Mapping[str, 'AtomicModel']) -> None:
        ends = [
            (connector.source_model_id, connector.source_port, 'out_ports'),
            (connector.target_model_id, connector.target_port, 'in_ports'),
        ]
        for model_id, port, ports_attr in ends:
            if model_id not in models:
                raise ConnectError(
                    f'Connector "{connector.id}": unknown model "{model_id}"'
                )
            ports = getattr(models[model_id].spec, ports_attr)
            if ports is not None and port not in ports:
                raise ConnectError(
                    f'Connector "{connector.id}": {model_id} has no port "{port}"'
                )

    def targets(self, source_id: str, source_port: str) -> List[Tuple[str, str]]:
        """``(target model id, target port)`` pairs connected to a source port."""
        return [
            (c.target_model_id, c.target_port)
            for c in self._routes.get((source_id, source_port), [])
        ]

    def route(self, source_id: str, message: Message, time: float) -> List[RoutedMessage]:
        """One :class:`RoutedMessage` per connector leaving the message's port.

        An unconnected port yields an empty list.

        """
        return [
            RoutedMessage(
                source_id, message.port, target_id, target_port, time, message.payload
            )
            for target_id, target_port in self.targets(source_id, message.port)
        ]
