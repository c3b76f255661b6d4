#!/usr/bin/env python3
# -*- encoding: utf-8 -*-
"""
To build a distribution:

    $ python -m build

"""
# Community Packages
from setuptools import setup

# Most arguments for ``setup`` are written in ``setup.cfg``.
# https://setuptools.readthedocs.io/en/latest/setuptools.html#using-a-src-layout
setup()
