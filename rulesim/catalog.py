"""Example model kinds written as rule specifications.

Each specification is plain wire-format data that may be dumped to JSON or
YAML with :func:`rulesim.rules.dump_rules` and used as a template for new
model kinds. The compiled classes are ready to instantiate, e.g.::

    gen = Generator(env, 'gen', message_interdeparture_time=lambda r: r.expovariate(2))
    batcher = Batcher(env, 'batcher', max_batch_size=10, max_batch_time=0.5)

External routines apply their state changes inline, with conditional state
transitions, so that several messages arriving at the same instant each see
the state left by the previous one. Internal routines named ``events_int``
may instead dispatch to a specific routine with a zero delay.

"""
from typing import Any, Dict, List, Optional, Sequence
import math

from .compiler import compile_model


def _edge(
    target: str,
    condition: Optional[str] = None,
    delay: Optional[str] = '0',
    parameters: Sequence[str] = (),
) -> Dict[str, Any]:
    return {
        'event_expression_target': target,
        'parameters': list(parameters),
        'condition': condition,
        'delay': delay,
    }


def _rule(
    expression: str,
    parameters: Sequence[str] = (),
    state_transitions: Sequence[Sequence[str]] = (),
    scheduling: Sequence[Dict[str, Any]] = (),
    cancelling: Sequence[Dict[str, Any]] = (),
    outputs: Optional[List[Dict[str, Any]]] = None,
    records: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    routine: Dict[str, Any] = {
        'state_transitions': [list(pair) for pair in state_transitions],
        'scheduling': list(scheduling),
        'cancelling': list(cancelling),
    }
    if outputs is not None:
        routine['outputs'] = outputs
    if records is not None:
        routine['records'] = records
    return {
        'event_expression': expression,
        'event_parameters': list(parameters),
        'event_routine': routine,
    }


_MESSAGE = ['incoming_message']
_ARRIVAL = [{'action': 'arrival', 'subject': 'incoming_message.payload'}]
_TIMER = [_edge('events_int', delay=None)]
_CANCEL_TIMER = [_edge('events_int', delay=None)]

_CAN_FIT_ONE_MORE = '(self.state.phase, len(self.state.jobs) + 1 < self.max_batch_size)'

_FULL = 'len(self.state.jobs) + 1 >= self.max_batch_size'

# Arrival of `incoming_message`. The conditions only read the phase and the
# job count, which change after every condition has been checked.
_ADD_TO_BATCH = [
    [
        'self.state.until_next_event',
        'self.max_batch_time',
        f'{_CAN_FIT_ONE_MORE} = (Phase::Passive, true)',
    ],
    ['self.state.until_next_event', '0.0', _FULL],
    ['self.state.phase', 'Phase::Release', _FULL],
    ['self.state.phase', 'Phase::Batching', f'!({_FULL})'],
    ['self.state.jobs', 'self.state.jobs + [incoming_message.payload]'],
]

# Release of a full queue, or of the first `max_batch_size` jobs when more
# are waiting.
_RELEASE = [
    ['self.state.phase', 'Phase::Passive', 'len(self.state.jobs) <= self.max_batch_size'],
    ['self.state.until_next_event', 'inf', 'len(self.state.jobs) <= self.max_batch_size'],
    ['self.state.phase', 'Phase::Batching', 'len(self.state.jobs) > self.max_batch_size'],
    [
        'self.state.until_next_event',
        'self.max_batch_time',
        'len(self.state.jobs) > self.max_batch_size',
    ],
    ['self.state.jobs', 'drop(self.state.jobs, self.max_batch_size)'],
]

#: Collects jobs into batches released when the batch is full or when the
#: batching time runs out, whichever comes first. Excess jobs spill over into
#: the next batching period.
BATCHER: Dict[str, Any] = {
    'name': 'Batcher',
    'phases': ['Passive', 'Batching', 'Release'],
    'status': {
        'Passive': 'Passive',
        'Batching': 'Creating batch',
        'Release': 'Releasing batch',
    },
    'ports': {'in': ['job'], 'out': ['job']},
    'parameters': {'max_batch_time': 1.0, 'max_batch_size': 10},
    'state': {'phase': 'Phase::Passive', 'until_next_event': 'inf', 'jobs': []},
    'timing_fields': ['until_next_event'],
    'rules': [
        # The batch timer is (re)armed when a batch starts or fills up.
        _rule(
            'events_ext',
            _MESSAGE,
            state_transitions=_ADD_TO_BATCH,
            scheduling=[
                _edge(
                    'events_int',
                    'self.state.phase == Phase::Release || len(self.state.jobs) == 1',
                    delay=None,
                )
            ],
            cancelling=[
                _edge(
                    'events_int',
                    'self.state.phase == Phase::Release || len(self.state.jobs) == 1',
                    delay=None,
                )
            ],
            records=_ARRIVAL,
        ),
        _rule(
            'events_int',
            outputs=[
                {
                    'port': 'job',
                    'payload': 'self.state.jobs',
                    'condition': 'len(self.state.jobs) <= self.max_batch_size',
                    'each': True,
                },
                {
                    'port': 'job',
                    'payload': 'take(self.state.jobs, self.max_batch_size)',
                    'condition': 'len(self.state.jobs) > self.max_batch_size',
                    'each': True,
                },
            ],
            state_transitions=_RELEASE,
            scheduling=_TIMER,
            records=[{'action': 'release'}],
        ),
        # A batch falling due as a job arrives is released before the job is
        # considered, so the arrival starts (or fills) the next batch. The
        # released jobs are the output of `events_int`.
        _rule(
            'events_con',
            _MESSAGE,
            state_transitions=_RELEASE + _ADD_TO_BATCH,
            scheduling=_TIMER,
            cancelling=_CANCEL_TIMER,
            records=[{'action': 'release'}] + _ARRIVAL,
        ),
    ],
}

#: Produces jobs forever, spaced by samples of `message_interdeparture_time`,
#: a callable taking the simulation's :class:`random.Random`.
GENERATOR: Dict[str, Any] = {
    'name': 'Generator',
    'phases': ['Initializing', 'Generating'],
    'ports': {'in': [], 'out': ['job']},
    'parameters': {'message_interdeparture_time': None},
    'state': {
        'phase': 'Phase::Initializing',
        'until_next_event': 0.0,
        'until_job': 0.0,
        'last_job_index': 0,
    },
    'timing_fields': ['until_next_event', 'until_job'],
    'rules': [
        _rule('events_ext', _MESSAGE, records=[]),
        _rule(
            'events_int',
            scheduling=[
                _edge(
                    'initialize_generation', 'self.state.phase == Phase::Initializing'
                ),
                _edge('release_job', 'self.state.phase == Phase::Generating'),
            ],
            records=[],
        ),
        _rule(
            'initialize_generation',
            state_transitions=[
                ['self.state.phase', 'Phase::Generating'],
                [
                    'self.state.until_next_event',
                    'sample(self.message_interdeparture_time)',
                ],
                ['self.state.until_job', 'self.state.until_next_event'],
            ],
            scheduling=_TIMER,
            records=[],
        ),
        _rule(
            'release_job',
            outputs=[
                {'port': 'job', 'payload': '"job " + str(self.state.last_job_index + 1)'}
            ],
            state_transitions=[
                ['self.state.phase', 'Phase::Generating'],
                [
                    'self.state.until_next_event',
                    'sample(self.message_interdeparture_time)',
                ],
                ['self.state.until_job', 'self.state.until_next_event'],
                ['self.state.last_job_index', 'self.state.last_job_index + 1'],
            ],
            scheduling=_TIMER,
            records=[
                {'action': 'departure', 'subject': '"job " + str(self.state.last_job_index)'}
            ],
        ),
    ],
}

#: Serves jobs one at a time, in arrival order, with service times sampled
#: from `service_time`. Arrivals beyond `queue_capacity` are dropped.
PROCESSOR: Dict[str, Any] = {
    'name': 'Processor',
    'phases': ['Passive', 'Active'],
    'status': {'Passive': 'Passive', 'Active': 'Processing'},
    'ports': {'in': ['job'], 'out': ['job']},
    'parameters': {'service_time': None, 'queue_capacity': math.inf},
    'state': {
        'phase': 'Phase::Passive',
        'until_next_event': 'inf',
        'until_job_completion': 'inf',
        'queue': [],
        'admitted': False,
        'starting': False,
    },
    'timing_fields': ['until_next_event'],
    'rules': [
        # An idle processor (no internal event pending) starts serving the
        # arrival; otherwise the job waits in the queue.
        _rule(
            'events_ext',
            _MESSAGE,
            state_transitions=[
                ['self.state.admitted', 'len(self.state.queue) < self.queue_capacity'],
                [
                    'self.state.starting',
                    'self.state.admitted && self.state.until_next_event == inf',
                ],
                [
                    'self.state.until_job_completion',
                    'sample(self.service_time)',
                    'self.state.starting',
                ],
                ['self.state.until_next_event', '0.0', 'self.state.starting'],
                [
                    'self.state.queue',
                    'self.state.queue + [incoming_message.payload]',
                    'self.state.admitted',
                ],
            ],
            scheduling=[_edge('events_int', 'self.state.starting', delay=None)],
            records=[
                {
                    'action': 'arrival',
                    'subject': 'incoming_message.payload',
                    'condition': 'self.state.admitted',
                },
                {
                    'action': 'drop',
                    'subject': 'incoming_message.payload',
                    'condition': '!self.state.admitted',
                },
            ],
        ),
        _rule(
            'events_int',
            scheduling=[
                _edge(
                    'resume_processing',
                    'self.state.phase == Phase::Passive && len(self.state.queue) > 0',
                ),
                _edge(
                    'passivate',
                    'self.state.phase == Phase::Passive && len(self.state.queue) == 0',
                ),
                _edge('release_job', 'self.state.phase == Phase::Active'),
            ],
            records=[],
        ),
        _rule(
            'resume_processing',
            state_transitions=[
                ['self.state.phase', 'Phase::Active'],
                ['self.state.until_next_event', 'self.state.until_job_completion'],
            ],
            scheduling=_TIMER,
            cancelling=_CANCEL_TIMER,
            records=[{'action': 'start', 'subject': 'first(self.state.queue)'}],
        ),
        _rule(
            'release_job',
            outputs=[{'port': 'job', 'payload': 'first(self.state.queue)'}],
            state_transitions=[
                ['self.state.queue', 'drop(self.state.queue, 1)'],
                ['self.state.phase', 'Phase::Passive'],
                ['self.state.until_next_event', '0.0'],
                ['self.state.until_job_completion', 'sample(self.service_time)'],
            ],
            scheduling=_TIMER,
            records=[{'action': 'departure', 'subject': 'len(self.state.queue)'}],
        ),
        _rule(
            'passivate',
            state_transitions=[
                ['self.state.phase', 'Phase::Passive'],
                ['self.state.until_next_event', 'inf'],
            ],
            records=[],
        ),
    ],
}

Batcher = compile_model(BATCHER)
Generator = compile_model(GENERATOR)
Processor = compile_model(PROCESSOR)
