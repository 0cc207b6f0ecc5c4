from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Mapping, NewType, Optional, Sequence, Tuple

from clubhouse.errors import InvalidTeamPolicy, RateNotConfigured


IdentityCode = NewType("IdentityCode", str)

DAY_TYPES = ("weekday", "weekend", "holiday")
TIME_SLOTS = ("morning", "afternoon", "twilight")
REDUCED_PLAY_TYPES = ("proportional", "fixed_rate", "no_refund")

ADD_ON_DEFAULT_RATIO = 0.5
REDUCED_PLAY_DEFAULT_RATE = 0.6
RATE_NOT_CONFIGURED = "rate_not_configured"
IDENTITY_INACTIVE = "identity_inactive"


def money(value) -> float:
    return float(Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def whole_units(value) -> float:
    return float(Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _normalize_str(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


def normalize_identity_code(value: Optional[str]) -> Optional[IdentityCode]:
    value = _normalize_str(value)
    if not value:
        return None
    value = value.replace("-", "_").replace(" ", "_")
    if value in {"walk_in", "walkin", "visitor"}:
        return IdentityCode("walkin")
    if value.startswith("member") and value[len("member"):].lstrip("_").isdigit():
        return IdentityCode(f"member_{int(value[len('member'):].lstrip('_'))}")
    return IdentityCode(value)


def day_type_for_date(on_date: date) -> str:
    # Python weekday(): Monday=0 ... Sunday=6
    return "weekend" if on_date.weekday() >= 5 else "weekday"


def determine_time_slot(tee_time: Optional[str], afternoon_hour: int = 12, twilight_hour: int = 16) -> str:
    if not tee_time:
        return "morning"
    try:
        hour = int(str(tee_time).strip().split(":")[0])
    except ValueError:
        return "morning"
    if hour < afternoon_hour:
        return "morning"
    if hour < twilight_hour:
        return "afternoon"
    return "twilight"


@dataclass(frozen=True)
class ReducedPlayPolicy:
    type: str = "proportional"
    rate: Optional[float] = None
    fixed_prices: Mapping[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping]) -> "ReducedPlayPolicy":
        if not raw:
            return cls()
        policy_type = _normalize_str(raw.get("type")) or "proportional"
        if policy_type not in REDUCED_PLAY_TYPES:
            policy_type = "proportional"
        rate = raw.get("rate")
        fixed = {
            normalize_identity_code(k): float(v)
            for k, v in (raw.get("fixed_prices") or {}).items()
            if normalize_identity_code(k) and v is not None
        }
        return cls(type=policy_type, rate=float(rate) if rate is not None else None, fixed_prices=fixed)


@dataclass(frozen=True)
class RateCell:
    day_type: str
    time_slot: str
    prices: Mapping[str, float]
    id: Optional[int] = None
    add_on_prices: Mapping[str, float] = field(default_factory=dict)
    reduced_play_policy: ReducedPlayPolicy = field(default_factory=ReducedPlayPolicy)
    caddy_fee: float = 0.0
    cart_fee: float = 0.0
    insurance_fee: float = 0.0
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    priority: int = 0
    status: str = "active"
    course_id: Optional[str] = None
    holes: Optional[int] = None
    name: Optional[str] = None

    def price_for(self, identity_code: Optional[str]) -> Optional[float]:
        """Standard price for the code, or None when the cell does not price it."""
        code = normalize_identity_code(identity_code)
        if not code or code not in self.prices or self.prices[code] is None:
            return None
        return float(self.prices[code])


@dataclass(frozen=True)
class TeamTier:
    min_players: int
    max_players: Optional[int]
    discount_rate: float
    label: str = ""

    def contains(self, size: int) -> bool:
        if size < self.min_players:
            return False
        return self.max_players is None or size <= self.max_players


@dataclass(frozen=True)
class TeamPricingPolicy:
    tiers: Tuple[TeamTier, ...] = ()
    floor_price_rate: float = 0.6
    enabled: bool = True

    def validate(self) -> "TeamPricingPolicy":
        if not (0 < float(self.floor_price_rate) <= 1):
            raise InvalidTeamPolicy("floor_price_rate must be in (0, 1]", floor_price_rate=self.floor_price_rate)
        previous: Optional[TeamTier] = None
        for tier in self.tiers:
            if not (0 < float(tier.discount_rate) <= 1):
                raise InvalidTeamPolicy("discount_rate must be in (0, 1]", tier=tier.label or tier.min_players)
            if tier.min_players < 1:
                raise InvalidTeamPolicy("min_players must be at least 1", tier=tier.label or tier.min_players)
            if tier.max_players is not None and tier.max_players < tier.min_players:
                raise InvalidTeamPolicy("max_players must be >= min_players", tier=tier.label or tier.min_players)
            if previous is not None:
                if previous.max_players is None:
                    raise InvalidTeamPolicy("only the last tier may be open-ended", tier=previous.label or previous.min_players)
                if tier.min_players != previous.max_players + 1:
                    raise InvalidTeamPolicy(
                        "tiers must be contiguous and ordered by min_players",
                        tier=tier.label or tier.min_players,
                    )
            previous = tier
        return self


@dataclass(frozen=True)
class RateConfig:
    """Immutable configuration snapshot handed to every resolution call."""
    rate_cells: Tuple[RateCell, ...] = ()
    team_policy: Optional[TeamPricingPolicy] = None
    # empty means "not loaded", so every identity is accepted
    active_identities: frozenset = frozenset()

    def is_active_identity(self, identity_code: Optional[str]) -> bool:
        if not self.active_identities:
            return True
        return normalize_identity_code(identity_code) in self.active_identities


@dataclass(frozen=True)
class PriceQuote:
    identity_code: Optional[str]
    amount: float
    rate_cell_id: Optional[int] = None
    warning: Optional[str] = None


def _cell_matches(
    cell: RateCell,
    day_type: str,
    time_slot: str,
    as_of: date,
    course_id: Optional[str],
    holes: Optional[int],
) -> bool:
    if _normalize_str(cell.status) != "active":
        return False
    if _normalize_str(cell.day_type) != _normalize_str(day_type):
        return False
    if _normalize_str(cell.time_slot) != _normalize_str(time_slot):
        return False
    if cell.valid_from is not None and as_of < cell.valid_from:
        return False
    if cell.valid_to is not None and as_of > cell.valid_to:
        return False
    if cell.course_id and course_id and str(cell.course_id) != str(course_id):
        return False
    if cell.holes and holes and int(cell.holes) != int(holes):
        return False
    return True


def _precedence(cell: RateCell) -> tuple:
    # Priority dominates; the most recently authored window breaks ties.
    return (
        int(cell.priority or 0),
        cell.valid_from is not None,
        cell.valid_from or date.min,
        cell.id or 0,
    )


def select_active_rate_cell(
    cells: Iterable[RateCell],
    day_type: str,
    time_slot: str,
    as_of: date,
    course_id: Optional[str] = None,
    holes: Optional[int] = None,
) -> Optional[RateCell]:
    best: Optional[RateCell] = None
    for cell in cells:
        if not _cell_matches(cell, day_type, time_slot, as_of, course_id, holes):
            continue
        if best is None or _precedence(cell) > _precedence(best):
            best = cell
    return best


def resolve_standard_price(
    config: RateConfig,
    day_type: str,
    time_slot: str,
    identity_code: Optional[str],
    as_of: date,
    course_id: Optional[str] = None,
    holes: Optional[int] = None,
) -> float:
    cell = select_active_rate_cell(config.rate_cells, day_type, time_slot, as_of, course_id, holes)
    if cell is None:
        raise RateNotConfigured(
            "No active rate sheet for this date and time slot",
            day_type=day_type,
            time_slot=time_slot,
            date=as_of.isoformat(),
        )
    price = cell.price_for(identity_code)
    if price is None:
        raise RateNotConfigured(
            "Rate sheet has no price for this identity",
            identity_code=identity_code,
            rate_cell_id=cell.id,
        )
    return money(price)


def quote_standard_price(
    config: RateConfig,
    day_type: str,
    time_slot: str,
    identity_code: Optional[str],
    as_of: date,
    course_id: Optional[str] = None,
    holes: Optional[int] = None,
) -> PriceQuote:
    """
    Non-blocking variant of `resolve_standard_price`: a pricing gap becomes a
    zero amount flagged with a warning so staff can fix the rate sheet later.
    """
    code = normalize_identity_code(identity_code)
    cell = select_active_rate_cell(config.rate_cells, day_type, time_slot, as_of, course_id, holes)
    try:
        amount = resolve_standard_price(config, day_type, time_slot, code, as_of, course_id, holes)
    except RateNotConfigured as e:
        print(f"[PRICING] {e.message}: {e.context}")
        return PriceQuote(identity_code=code, amount=0.0, rate_cell_id=cell.id if cell else None, warning=RATE_NOT_CONFIGURED)
    return PriceQuote(identity_code=code, amount=amount, rate_cell_id=cell.id if cell else None)


def resolve_add_on_price(cell: RateCell, identity_code: Optional[str]) -> float:
    code = normalize_identity_code(identity_code)
    explicit = (cell.add_on_prices or {}).get(code) if code else None
    if explicit is not None:
        return money(explicit)
    return whole_units((cell.price_for(code) or 0.0) * ADD_ON_DEFAULT_RATIO)


def _proportional(full: float, holes_booked: int, holes_played: int, rate: float) -> float:
    played_share = full * (holes_played / holes_booked)
    return min(full, max(played_share, full * rate))


def reduce_price(
    policy: Optional[ReducedPlayPolicy],
    full: float,
    holes_booked: int,
    holes_played: int,
    identity_code: Optional[str] = None,
) -> float:
    """Apply a reduced-play policy to a full-round amount."""
    if holes_booked <= 0:
        raise ValueError("holes_booked must be positive")
    if holes_played < 0:
        raise ValueError("holes_played cannot be negative")
    full = float(full or 0.0)
    if holes_played >= holes_booked:
        return money(full)

    policy = policy or ReducedPlayPolicy()
    if policy.type == "no_refund":
        return money(full)
    if policy.type == "fixed_rate":
        code = normalize_identity_code(identity_code)
        fixed = (policy.fixed_prices or {}).get(code) if code else None
        if fixed is not None:
            return money(fixed)
        return money(_proportional(full, holes_booked, holes_played, REDUCED_PLAY_DEFAULT_RATE))

    rate = policy.rate if policy.rate is not None else REDUCED_PLAY_DEFAULT_RATE
    return money(_proportional(full, holes_booked, holes_played, rate))


def resolve_reduced_play_price(
    cell: RateCell,
    identity_code: Optional[str],
    holes_booked: int,
    holes_played: int,
) -> float:
    full = cell.price_for(identity_code) or 0.0
    return reduce_price(cell.reduced_play_policy, full, holes_booked, holes_played, identity_code)


def find_team_tier(policy: Optional[TeamPricingPolicy], size: int) -> Optional[TeamTier]:
    if policy is None or not policy.enabled:
        return None
    for tier in policy.tiers:
        if tier.contains(int(size or 0)):
            return tier
    return None


def apply_team_discount(policy: Optional[TeamPricingPolicy], group_size: int, subtotal: float) -> float:
    tier = find_team_tier(policy, group_size)
    if tier is None:
        return money(subtotal)
    discounted = subtotal * float(tier.discount_rate)
    floor = subtotal * float(policy.floor_price_rate)
    return money(max(discounted, floor))


def spread_total(amounts: Sequence[float], total: float) -> List[float]:
    """
    Scale per-line amounts so they sum to `total`, rounding to cents with
    the remainder carried by the last line.
    """
    if not amounts:
        return []
    subtotal = sum(amounts)
    if subtotal <= 0:
        return [money(a) for a in amounts]
    shares = [money(a * total / subtotal) for a in amounts[:-1]]
    shares.append(money(total - sum(shares)))
    return shares


@dataclass(frozen=True)
class PlayerQuote:
    name: str
    identity_code: Optional[str]
    standard_fee: float
    green_fee: float
    warning: Optional[str] = None


@dataclass(frozen=True)
class BookingQuote:
    day_type: str
    time_slot: str
    rate_cell_id: Optional[int]
    players: Tuple[PlayerQuote, ...]
    green_fee_subtotal: float
    green_fee_total: float
    discount: float
    team_tier: Optional[TeamTier]
    caddy_fee: float
    cart_fee: float
    insurance_fee: float
    total: float

    @property
    def has_warnings(self) -> bool:
        return any(p.warning for p in self.players)


def quote_booking(
    config: RateConfig,
    day_type: str,
    time_slot: str,
    as_of: date,
    players: Sequence[Mapping],
    holes: int = 18,
    team_size: Optional[int] = None,
    need_caddy: bool = False,
    need_cart: bool = False,
    course_id: Optional[str] = None,
) -> BookingQuote:
    cell = select_active_rate_cell(config.rate_cells, day_type, time_slot, as_of, course_id, holes)

    quotes = [
        quote_standard_price(config, day_type, time_slot, p.get("identity_code"), as_of, course_id, holes)
        for p in players
    ]
    standard = [q.amount for q in quotes]
    subtotal = money(sum(standard))
    group_size = int(team_size or len(players))
    green_total = apply_team_discount(config.team_policy, group_size, subtotal)
    discounted = spread_total(standard, green_total)

    player_quotes = tuple(
        PlayerQuote(
            name=str(p.get("name") or ""),
            identity_code=q.identity_code,
            standard_fee=q.amount,
            green_fee=share,
            warning=q.warning or (None if config.is_active_identity(q.identity_code) else IDENTITY_INACTIVE),
        )
        for p, q, share in zip(players, quotes, discounted)
    )

    caddy_fee = money(cell.caddy_fee) if (cell and need_caddy) else 0.0
    cart_fee = money(cell.cart_fee) if (cell and need_cart) else 0.0
    insurance_fee = money((cell.insurance_fee or 0.0) * len(players)) if cell else 0.0

    return BookingQuote(
        day_type=day_type,
        time_slot=time_slot,
        rate_cell_id=cell.id if cell else None,
        players=player_quotes,
        green_fee_subtotal=subtotal,
        green_fee_total=green_total,
        discount=money(subtotal - green_total),
        team_tier=find_team_tier(config.team_policy, group_size),
        caddy_fee=caddy_fee,
        cart_fee=cart_fee,
        insurance_fee=insurance_fee,
        total=money(green_total + caddy_fee + cart_fee + insurance_fee),
    )
