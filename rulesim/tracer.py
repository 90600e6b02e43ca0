"""Tracing of model activity to logs, waveforms, and databases.

Tracers are configured through ``sim.<name>.*`` keys and filtered by regular
expressions matched against the trace *scope*: a model id for model traces,
``<model id>.phase``/``<model id>.sigma`` for waveform variables, and ``sim``
for the simulation driver.

"""
from typing import TYPE_CHECKING, Any, Callable, List, Optional
import os
import re
import sqlite3
import string
import sys
import traceback

from vcd import VCDWriter

if TYPE_CHECKING:
    from .simulation import SimEnvironment

TraceCallback = Callable[..., None]

_formatter = string.Formatter()


def partial_format(format_string: str, **kwargs: Any) -> str:
    """Replace only the named fields present in `kwargs`.

    Remaining fields are left in place so the result may be formatted again,
    e.g. with the current timestamp.

    """
    result = []
    for literal, field, spec, conversion in _formatter.parse(format_string):
        if literal:
            result.append(literal.replace('{', '{{').replace('}', '}}'))
        if field is not None:
            inner = field
            if conversion:
                inner += '!' + conversion
            if spec:
                inner += ':' + partial_format(spec, **kwargs)
            if field in kwargs:
                result.append('{' + inner + '}')
            else:
                result.extend(['{{', inner, '}}'])
    return ''.join(result).format(**kwargs)


class Tracer:

    name: str = ''

    def __init__(self, env: 'SimEnvironment'):
        self.env = env
        cfg_scope = f'sim.{self.name}'
        self.enabled: bool = env.config.setdefault(f'{cfg_scope}.enable', False)
        self.persist: bool = env.config.setdefault(f'{cfg_scope}.persist', True)
        if self.enabled:
            self.open()
            include_pat: List[str] = env.config.setdefault(
                f'{cfg_scope}.include_pat', ['.*']
            )
            exclude_pat: List[str] = env.config.setdefault(
                f'{cfg_scope}.exclude_pat', []
            )
            self._include_re = [re.compile(pat) for pat in include_pat]
            self._exclude_re = [re.compile(pat) for pat in exclude_pat]

    def is_scope_enabled(self, scope: str) -> bool:
        return (
            self.enabled
            and any(r.match(scope) for r in self._include_re)
            and not any(r.match(scope) for r in self._exclude_re)
        )

    def open(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def close(self) -> None:
        if self.enabled:
            self._close()

    def _close(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def remove_files(self) -> None:
        raise NotImplementedError()  # pragma: no cover

    def flush(self) -> None:
        pass

    def activate_trace(self, scope: str, **hints) -> Optional[TraceCallback]:
        raise NotImplementedError()  # pragma: no cover

    def trace_exception(self) -> None:
        pass


class LogTracer(Tracer):
    """Human-readable text log, one line per traced value."""

    name = 'log'
    default_format = '{level:7} {ts:.3f}: {scope}:'

    levels = {
        'ERROR': 1,
        'WARNING': 2,
        'INFO': 3,
        'RECORD': 4,
        'DEBUG': 5,
    }

    def open(self) -> None:
        self.filename: str = self.env.config.setdefault('sim.log.file', 'sim.log')
        buffering: int = self.env.config.setdefault('sim.log.buffering', -1)
        level: str = self.env.config.setdefault('sim.log.level', 'INFO')
        self.max_level = self.levels[level]
        self.format_str: str = self.env.config.setdefault(
            'sim.log.format', self.default_format
        )
        if self.filename:
            self.file = open(self.filename, 'w', buffering)
            self.should_close = True
        else:
            self.file = sys.stderr
            self.should_close = False

    def flush(self) -> None:
        self.file.flush()

    def _close(self) -> None:
        if self.should_close:
            self.file.close()

    def remove_files(self) -> None:
        if os.path.isfile(self.filename):
            os.remove(self.filename)

    def is_scope_enabled(self, scope: str, level: Optional[str] = None) -> bool:
        return (
            level is None or self.levels[level] <= self.max_level
        ) and super().is_scope_enabled(scope)

    def activate_trace(self, scope: str, **hints) -> Optional[TraceCallback]:
        level: str = hints.get('level', 'DEBUG')
        if not self.is_scope_enabled(scope, level):
            return None
        format_str = partial_format(self.format_str, level=level, scope=scope)

        def trace_callback(*value) -> None:
            print(format_str.format(ts=self.env.now), *value, file=self.file)

        return trace_callback

    def trace_exception(self) -> None:
        tb_lines = traceback.format_exception(*sys.exc_info())
        print(
            self.format_str.format(level='ERROR', ts=self.env.now, scope='Exception'),
            tb_lines[-1],
            '\n',
            *tb_lines,
            file=self.file,
        )


class VCDTracer(Tracer):
    """Value change dump of model phases and time advances.

    Simulation time is scaled by ``sim.vcd.resolution`` and rounded to get
    integer VCD timestamps in units of ``sim.vcd.timescale``.

    """

    name = 'vcd'

    def open(self) -> None:
        dump_filename: str = self.env.config.setdefault('sim.vcd.dump_file', 'sim.vcd')
        vcd_timescale: str = self.env.config.setdefault('sim.vcd.timescale', '1 s')
        self.resolution: float = self.env.config.setdefault('sim.vcd.resolution', 1)
        if self.resolution <= 0:
            raise ValueError(
                f'sim.vcd.resolution must be positive, got {self.resolution}'
            )
        check_values: bool = self.env.config.setdefault('sim.vcd.check_values', True)
        self.dump_file = open(dump_filename, 'w')
        self.vcd = VCDWriter(
            self.dump_file, timescale=vcd_timescale, check_values=check_values
        )

    def vcd_now(self) -> int:
        return int(round(self.env.now * self.resolution))

    def flush(self) -> None:
        self.dump_file.flush()

    def _close(self) -> None:
        self.vcd.close(self.vcd_now())
        self.dump_file.close()

    def remove_files(self) -> None:
        if os.path.isfile(self.dump_file.name):
            os.remove(self.dump_file.name)

    def activate_trace(self, scope: str, **hints) -> Optional[TraceCallback]:
        assert self.enabled
        var_type = hints['var_type']
        kwargs = {k: hints[k] for k in ['size', 'init', 'ident'] if k in hints}

        parent_scope, name = scope.rsplit('.', 1)
        var = self.vcd.register_var(parent_scope, name, var_type, **kwargs)

        def trace_callback(value) -> None:
            self.vcd.change(var, self.vcd_now(), value)

        return trace_callback


class SQLiteTracer(Tracer):
    """SQLite database of traced values and committed records.

    Trace values go to ``sim.db.trace_table``; records (traced with the
    ``record`` hint) go to ``sim.db.record_table`` for output analysis.

    """

    name = 'db'

    def open(self) -> None:
        self.filename: str = self.env.config.setdefault('sim.db.file', 'sim.sqlite')
        self.trace_table: str = self.env.config.setdefault(
            'sim.db.trace_table', 'trace'
        )
        self.record_table: str = self.env.config.setdefault(
            'sim.db.record_table', 'record'
        )
        self.remove_files()
        self.db = sqlite3.connect(self.filename)
        self._is_trace_table_created = False
        self._is_record_table_created = False

    def _create_trace_table(self) -> None:
        if not self._is_trace_table_created:
            self.db.execute(
                f'CREATE TABLE {self.trace_table} ('
                f'timestamp FLOAT, '
                f'scope TEXT, '
                f'value)'
            )
            self._is_trace_table_created = True

    def _create_record_table(self) -> None:
        if not self._is_record_table_created:
            self.db.execute(
                f'CREATE TABLE {self.record_table} ('
                f'time FLOAT, '
                f'model_id TEXT, '
                f'action TEXT, '
                f'subject)'
            )
            self._is_record_table_created = True

    def flush(self) -> None:
        self.db.commit()

    def _close(self) -> None:
        self.db.commit()
        self.db.close()

    def remove_files(self) -> None:
        if self.filename != ':memory:':
            for filename in [self.filename, f'{self.filename}-journal']:
                if os.path.exists(filename):
                    os.remove(filename)

    def activate_trace(self, scope: str, **hints) -> Optional[TraceCallback]:
        assert self.enabled
        if hints.get('record'):
            self._create_record_table()
            insert_sql = (
                f'INSERT INTO {self.record_table} (time, model_id, action, subject) '
                f'VALUES (?, ?, ?, ?)'
            )

            def record_callback(record) -> None:
                self.db.execute(
                    insert_sql,
                    (record.time, record.model_id, record.action, _sql_value(record.subject)),
                )

            return record_callback

        self._create_trace_table()
        insert_sql = (
            f'INSERT INTO {self.trace_table} (timestamp, scope, value) VALUES (?, ?, ?)'
        )

        def trace_callback(value) -> None:
            self.db.execute(insert_sql, (self.env.now, scope, _sql_value(value)))

        return trace_callback


def _sql_value(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, str)):
        return value
    return str(value)


class TraceManager:
    """Owns the log, VCD, and SQLite tracers of a simulation environment."""

    def __init__(self, env: 'SimEnvironment') -> None:
        self.tracers: List[Tracer] = []
        try:
            self.log_tracer = LogTracer(env)
            self.tracers.append(self.log_tracer)
            self.vcd_tracer = VCDTracer(env)
            self.tracers.append(self.vcd_tracer)
            self.sqlite_tracer = SQLiteTracer(env)
            self.tracers.append(self.sqlite_tracer)
        except BaseException:
            self.close()
            raise

    def flush(self) -> None:
        """Flush all managed tracers instances.

        The effect of flushing is tracer-dependent.

        """
        for tracer in self.tracers:
            if tracer.enabled:
                tracer.flush()

    def close(self) -> None:
        for tracer in self.tracers:
            tracer.close()
            if tracer.enabled and not tracer.persist:
                tracer.remove_files()

    def get_trace_function(self, scope: str, **hints) -> Callable[..., None]:
        """Get a function that traces values for `scope`.

        `hints` are keyed by tracer name; only tracers named in `hints` and
        enabled for `scope` receive the traced values. E.g.
        ``get_trace_function('gen', log={'level': 'INFO'})``.

        """
        callbacks = []
        for tracer in self.tracers:
            if tracer.name in hints and tracer.is_scope_enabled(scope):
                callback = tracer.activate_trace(scope, **hints[tracer.name])
                if callback:
                    callbacks.append(callback)

        def trace_function(*value) -> None:
            for callback in callbacks:
                callback(*value)

        return trace_function

    def trace_exception(self) -> None:
        for tracer in self.tracers:
            if tracer.enabled:
                tracer.trace_exception()
