#! /usr/bin/env python
# -*- encoding: utf-8 -*-
# SPDX-License-Identifier: GPL-3.0-or-later

from setuptools import setup, find_packages

setup(
    name='strangers',
    version='1.0',
    description='Anonymous one-to-one chat with serverless matchmaking',
    packages=find_packages(exclude=['strangers.tests']),
    python_requires='>=3.8',
    install_requires=[
        'aiohttp',
        'aioconsole',
        'prometheus_client',
        'PyYAML',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-aiohttp',
            'pytest-asyncio',
            'pytest-mock',
        ],
    },
    zip_safe=False,
)
