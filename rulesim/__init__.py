"""Discrete event simulation of models compiled from declarative rules.

The `rulesim` package runs DEVS (Discrete EVent System Specification) atomic
models whose behavior is not hand-coded but compiled from tables of *event
rules*. It builds on the :mod:`simpy` event heap for its clock and pending
event list.

Rules
=====

A model kind is described by a :class:`~rulesim.rules.ModelSpec`: its phases,
initial state, instance parameters, time advance, ports, and one
:class:`~rulesim.rules.EventRule` per event expression. A rule lists the state
transitions of its routine, the events the routine schedules (each with an
optional condition and a delay), and the events it cancels. Conditions,
values, and delays are small typed expressions, see
:mod:`rulesim.expression`.

Rules are plain data and may be loaded from, or dumped to, JSON and YAML
files with :func:`~rulesim.rules.load_model_spec()` and
:func:`~rulesim.rules.dump_rules()`.

Compilation
===========

:func:`~rulesim.compiler.compile_model()` turns a model specification into an
:class:`~rulesim.compiler.AtomicModel` subclass. Every expression is parsed,
name-checked, and compiled to closures once; errors are reported before any
simulation time advances. The :mod:`rulesim.catalog` module holds example
model kinds (generator, batcher, processor).

Simulation
==========

A :class:`~rulesim.simulation.Simulation` executes model instances connected
by a static graph of :class:`~rulesim.router.Connector` edges. It is stepped
with :meth:`~rulesim.simulation.Simulation.step()`,
:meth:`~rulesim.simulation.Simulation.step_n()` and
:meth:`~rulesim.simulation.Simulation.step_until()`; exogenous input is
delivered with :meth:`~rulesim.simulation.Simulation.inject_input()`.

The :func:`~rulesim.simulation.simulate()` function takes a configuration
dict and a build function and takes care of the rest: workspace, tracing,
running to the configured duration, and result files.

Configuration
=============

A single, flat configuration dictionary with dot-separated keys (e.g.
'sim.seed', 'sim.log.level') captures all configuration for the simulation.
See :mod:`rulesim.config`.

Monitoring
==========

Models trace through the :class:`~rulesim.tracer.TraceManager`: a text log,
a VCD waveform of every model's phase and time advance, and an SQLite
database that also stores committed records.

"""

__all__ = ()
