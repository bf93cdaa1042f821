#!/usr/bin/env python

from setuptools import setup
from mopyq import __version__ as version

setup(name='mopyq',
      version=version,
      description='A Python library for reading and writing MPQ (MoPaQ) archives.',
      py_modules=['mopyq', '_pkware', '_huffman', '_adpcm', '_sparse'],
      python_requires='>=3.7',
      extras_require={
          'test': ['pytest'],
      },
      classifiers=[
          'Development Status :: 3 - Alpha',
          'Intended Audience :: Developers',
          'Operating System :: MacOS :: MacOS X',
          'Operating System :: Microsoft :: Windows',
          'Operating System :: POSIX',
          'Programming Language :: Python :: 3.7',
          'Programming Language :: Python :: 3.8',
          'Topic :: Games/Entertainment :: Real Time Strategy',
          'Topic :: Software Development :: Libraries',
          'Topic :: System :: Archiving',
      ],
      )
