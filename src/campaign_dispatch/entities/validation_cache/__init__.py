# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
from .table import EmailValidationCacheTable

__all__ = ["EmailValidationCacheTable"]
