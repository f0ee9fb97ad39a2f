
from setuptools import setup

setup(
    url='none',
    author='Matt Haggard',
    author_email='haggardii@gmail.com',
    name='txcasclient',
    version='0.1',
    description='CAS protocol client for Twisted web applications.',
    packages=[
        'txcasclient', 'txcasclient.test', 'twisted.plugins',
    ],
    package_data={
        'twisted': ['plugins/casclient_pgt_storage.py'],
    },
    install_requires=[
        'klein',
        'pem',
        'pyOpenSSL',
        'service_identity',
        'treq',
        'Twisted>=16.0.0',
        'zope.interface',
    ],
    extras_require={
        'test': ['mock'],
    },
)
