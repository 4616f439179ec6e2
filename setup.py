#!/usr/bin/python3

from setuptools import setup

setup(name='stack-symbolizer',
      version='1.0',
      description='Resolve kernel and user-space stack trace addresses into function names, using kallsyms, process memory maps and ELF symbol tables',
      author='',
      author_email='',
      python_requires='>=3.7',
      install_requires=['zstandard'],
      extras_require={'test': ['pytest']},
      packages=['stack_symbolizer', 'stack_symbolizer.core',
        'stack_symbolizer.utils', 'stack_symbolizer.scripts'],
      entry_points={'console_scripts': [
        'stack-symbolizer=stack_symbolizer.scripts.symbolize:main']}
     )
