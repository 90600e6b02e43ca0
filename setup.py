# encoding: utf-8
from setuptools import setup


setup(
    name='rulesim',
    version='0.1.0',
    description='DEVS simulation of models compiled from declarative event rules',
    long_description=open('README.rst', 'rb').read().decode('utf-8'),
    install_requires=['simpy', 'pyvcd', 'PyYAML'],
    extras_require={'test': ['pytest']},
    packages=['rulesim'],
    include_package_data=True,
    python_requires='>=3.7',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'Natural Language :: English',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: Implementation :: CPython',
        'Topic :: Scientific/Engineering',
    ],
)
