#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Windows display adapter enumeration via DXGI and ctypes.

Gives the adapter name and dedicated VRAM on Windows for any vendor, which
is what the probe needs to tell a discrete GPU from an integrated or
virtual display adapter. Returns nothing on other platforms.
"""

import sys
import ctypes
from ctypes import POINTER, Structure, byref, c_long, c_uint, c_ulonglong, c_void_p, c_wchar, cast
from typing import List, NamedTuple

DXGI_ERROR_NOT_FOUND = 0x887A0002 - (1 << 32)  # HRESULT as a signed 32-bit value
DXGI_ADAPTER_FLAG_SOFTWARE = 0x2

# IID_IDXGIFactory1: {770aae78-f26f-4dba-a829-253c83d1b387}
IID_IDXGIFactory1 = (ctypes.c_ubyte * 16)(
    0x78, 0xae, 0x0a, 0x77, 0x6f, 0xf2, 0xba, 0x4d,
    0xa8, 0x29, 0x25, 0x3c, 0x83, 0xd1, 0xb3, 0x87
)

# VTable slots: IUnknown(3) + IDXGIObject(3) + IDXGIFactory(5) -> EnumAdapters1 = 11;
# IUnknown(3) + IDXGIObject(3) + IDXGIAdapter(3) -> GetDesc1 = 9
VTABLE_RELEASE = 2
VTABLE_ENUM_ADAPTERS1 = 11
VTABLE_GET_DESC1 = 9


class _LUID(Structure):
    _fields_ = [("LowPart", c_uint), ("HighPart", c_long)]


class _AdapterDesc1(Structure):
    _fields_ = [
        ("Description", c_wchar * 128),
        ("VendorId", c_uint),
        ("DeviceId", c_uint),
        ("SubSysId", c_uint),
        ("Revision", c_uint),
        ("DedicatedVideoMemory", c_ulonglong),
        ("DedicatedSystemMemory", c_ulonglong),
        ("SharedSystemMemory", c_ulonglong),
        ("AdapterLuid", _LUID),
        ("Flags", c_uint),
    ]


class DisplayAdapter(NamedTuple):
    name: str
    vendor_id: int
    dedicated_vram_bytes: int
    is_software: bool


def _com_call(interface_ptr, index, argtypes, restype, *args):
    """Call a COM method through the interface's VTable."""
    vtable = cast(interface_ptr, POINTER(c_void_p)).contents.value
    method = cast(vtable + index * ctypes.sizeof(c_void_p), POINTER(c_void_p)).contents.value
    return ctypes.WINFUNCTYPE(restype, *argtypes)(method)(interface_ptr, *args)


def list_display_adapters() -> List[DisplayAdapter]:
    """
    Enumerate DXGI adapters.

    Returns:
        One DisplayAdapter per adapter in DXGI order, or an empty list when
        not on Windows or DXGI is unavailable
    """
    if sys.platform != 'win32':
        return []
    try:
        create_factory = ctypes.windll.dxgi.CreateDXGIFactory1
    except (AttributeError, OSError):
        return []
    create_factory.argtypes = [POINTER(ctypes.c_ubyte * 16), POINTER(c_void_p)]
    create_factory.restype = c_long

    factory = c_void_p()
    if create_factory(byref(IID_IDXGIFactory1), byref(factory)) != 0 or not factory:
        return []

    adapters = []
    try:
        index = 0
        while True:
            adapter = c_void_p()
            hr = _com_call(factory, VTABLE_ENUM_ADAPTERS1,
                           [c_void_p, c_uint, POINTER(c_void_p)], c_long, index, byref(adapter))
            index += 1
            if hr == DXGI_ERROR_NOT_FOUND:
                break
            if hr != 0 or not adapter:
                continue
            try:
                desc = _AdapterDesc1()
                if _com_call(adapter, VTABLE_GET_DESC1, [c_void_p, POINTER(_AdapterDesc1)], c_long, byref(desc)) == 0:
                    adapters.append(DisplayAdapter(
                        name=desc.Description,
                        vendor_id=desc.VendorId,
                        dedicated_vram_bytes=desc.DedicatedVideoMemory,
                        is_software=bool(desc.Flags & DXGI_ADAPTER_FLAG_SOFTWARE),
                    ))
            finally:
                _com_call(adapter, VTABLE_RELEASE, [c_void_p], c_long)
    finally:
        _com_call(factory, VTABLE_RELEASE, [c_void_p], c_long)
    return adapters
