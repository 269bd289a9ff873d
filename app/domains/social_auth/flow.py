"""
File: app/domains/social_auth/flow.py
Description: 授权绑定状态机 (LinkAttempt / 目标选择)

两条状态链：
1. 授权尝试 (每个 LinkAttempt 一份):
   Idle -> AuthUrlRequested -> (Redirected | PopupOpened) -> CallbackPending
        -> CallbackSuccess -> AccountLinked
        -> CallbackError -> Failed
   CallbackPending -> Cancelled (opener 侧检测到弹窗关闭 / 超时)

2. 目标选择 (账号绑定成功之后):
   TargetsUnknown -> TargetsLoading -> (TargetsLoaded | TargetsLoadFailed)
   TargetsLoaded -> Selecting -> LinkSubmitted -> (LinkSettled | LinkFailed)

所有失败终态都可回到可重试的稳定状态 (Idle / TargetsLoaded)。
非法跳转抛出 InvalidTransition (属于程序错误，不是业务异常)。

Author: jinmozhe
Created: 2026-03-02
"""

from collections.abc import Mapping
from enum import StrEnum
from typing import Generic, TypeVar


class AttemptState(StrEnum):
    IDLE = "Idle"
    AUTH_URL_REQUESTED = "AuthUrlRequested"
    REDIRECTED = "Redirected"
    POPUP_OPENED = "PopupOpened"
    CALLBACK_PENDING = "CallbackPending"
    CALLBACK_SUCCESS = "CallbackSuccess"
    CALLBACK_ERROR = "CallbackError"
    ACCOUNT_LINKED = "AccountLinked"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class TargetsState(StrEnum):
    TARGETS_UNKNOWN = "TargetsUnknown"
    TARGETS_LOADING = "TargetsLoading"
    TARGETS_LOADED = "TargetsLoaded"
    TARGETS_LOAD_FAILED = "TargetsLoadFailed"
    SELECTING = "Selecting"
    LINK_SUBMITTED = "LinkSubmitted"
    LINK_SETTLED = "LinkSettled"
    LINK_FAILED = "LinkFailed"


S = TypeVar("S", AttemptState, TargetsState)

# ------------------------------------------------------------------------------
# 跳转表
# ------------------------------------------------------------------------------

ATTEMPT_TRANSITIONS: Mapping[AttemptState, frozenset[AttemptState]] = {
    AttemptState.IDLE: frozenset({AttemptState.AUTH_URL_REQUESTED}),
    # 获取链接失败时回到 Idle，不产生 LinkAttempt
    AttemptState.AUTH_URL_REQUESTED: frozenset(
        {AttemptState.REDIRECTED, AttemptState.POPUP_OPENED, AttemptState.IDLE}
    ),
    AttemptState.REDIRECTED: frozenset({AttemptState.CALLBACK_PENDING}),
    AttemptState.POPUP_OPENED: frozenset({AttemptState.CALLBACK_PENDING}),
    AttemptState.CALLBACK_PENDING: frozenset(
        {
            AttemptState.CALLBACK_SUCCESS,
            AttemptState.CALLBACK_ERROR,
            AttemptState.CANCELLED,
        }
    ),
    AttemptState.CALLBACK_SUCCESS: frozenset({AttemptState.ACCOUNT_LINKED}),
    AttemptState.CALLBACK_ERROR: frozenset({AttemptState.FAILED}),
    AttemptState.ACCOUNT_LINKED: frozenset({AttemptState.IDLE}),
    AttemptState.FAILED: frozenset({AttemptState.IDLE}),
    AttemptState.CANCELLED: frozenset({AttemptState.IDLE}),
}

TARGETS_TRANSITIONS: Mapping[TargetsState, frozenset[TargetsState]] = {
    TargetsState.TARGETS_UNKNOWN: frozenset({TargetsState.TARGETS_LOADING}),
    TargetsState.TARGETS_LOADING: frozenset(
        {TargetsState.TARGETS_LOADED, TargetsState.TARGETS_LOAD_FAILED}
    ),
    TargetsState.TARGETS_LOAD_FAILED: frozenset({TargetsState.TARGETS_LOADING}),
    # 刷新 (例如解绑后) 重新进入 Loading
    TargetsState.TARGETS_LOADED: frozenset(
        {TargetsState.SELECTING, TargetsState.TARGETS_LOADING}
    ),
    TargetsState.SELECTING: frozenset(
        {TargetsState.LINK_SUBMITTED, TargetsState.TARGETS_LOADED}
    ),
    TargetsState.LINK_SUBMITTED: frozenset(
        {TargetsState.LINK_SETTLED, TargetsState.LINK_FAILED}
    ),
    TargetsState.LINK_SETTLED: frozenset(
        {TargetsState.TARGETS_LOADED, TargetsState.SELECTING}
    ),
    TargetsState.LINK_FAILED: frozenset(
        {TargetsState.TARGETS_LOADED, TargetsState.SELECTING}
    ),
}


class InvalidTransition(ValueError):
    """状态机收到不允许的跳转"""

    def __init__(self, current: StrEnum, target: StrEnum):
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current} -> {target}")


class FlowMachine(Generic[S]):
    """
    表驱动的有限状态机。

    用法:
        machine = attempt_machine()
        machine.advance(AttemptState.AUTH_URL_REQUESTED)
    """

    def __init__(self, transitions: Mapping[S, frozenset[S]], state: S):
        self.transitions = transitions
        self.state = state
        self.history: list[S] = [state]

    def can(self, target: S) -> bool:
        return target in self.transitions.get(self.state, frozenset())

    def advance(self, target: S) -> S:
        if not self.can(target):
            raise InvalidTransition(self.state, target)
        self.state = target
        self.history.append(target)
        return target

    def walk(self, *targets: S) -> S:
        """依次执行多次跳转，任一步非法即抛出"""
        for target in targets:
            self.advance(target)
        return self.state


def attempt_machine(
    state: AttemptState = AttemptState.IDLE,
) -> FlowMachine[AttemptState]:
    return FlowMachine(ATTEMPT_TRANSITIONS, state)


def targets_machine(
    state: TargetsState = TargetsState.TARGETS_UNKNOWN,
) -> FlowMachine[TargetsState]:
    return FlowMachine(TARGETS_TRANSITIONS, state)
