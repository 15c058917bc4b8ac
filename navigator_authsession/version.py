"""Navigator AuthSession Meta information.
   Navigator AuthSession keeps an authenticated session alive, encrypted
   and verified across login, periodic checks and push step-up approvals.
"""
__title__ = 'navigator_authsession'
__description__ = (
   'Navigator AuthSession: encrypted session credentials, periodic '
   'verification and push step-up approval.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-authsession'
