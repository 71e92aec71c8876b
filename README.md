# travelops

`travelops` is the back-office core of a group-travel platform. It keeps the
money side of bookings in a double-entry ledger and manages group
itineraries: their checkpoints, members, member forms and the change history
that travellers see. Storage is `sqlite3` from the standard library; the
package has no third-party dependencies and needs Python 3.11 or later.

## Installing

```
pip install .
pip install ".[test]"   # with pytest, to run the tests
```

## A short example

```python
import sqlite3

from travelops.finance.models import RecordTenderRequest, TenderType
from travelops.finance.repository import Repository, create_schema
from travelops.finance.service import FinanceService

conn = sqlite3.connect(":memory:")
create_schema(conn)
finance = FinanceService(Repository(conn))
payment_id = finance.record_tender(
    "accountant-1",
    RecordTenderRequest(
        order_type="booking",
        order_id="booking-1",
        tender_type=TenderType.CASH,
        amount=120.0,
        currency="USD",
    ),
)
```

```python
import sqlite3

from travelops.itineraries.models import CreateItineraryRequest
from travelops.itineraries.repository import Repository, create_schema
from travelops.itineraries.service import ItineraryService

conn = sqlite3.connect(":memory:")
create_schema(conn)
trips = ItineraryService(Repository(conn))
created = trips.create_itinerary(
    "organizer-1",
    CreateItineraryRequest.from_dict(
        {
            "title": "Coast trip",
            "meetupAt": "2026-07-14T18:30:00Z",
            "meetupLocationText": "Central Station",
        }
    ),
)
trips.publish_itinerary(created.id, "organizer-1", roles=[])
print(created.to_json())
```

Both repositories switch their connection to autocommit and read rows by
column name; hand each one its own connection.

## Finance

`travelops.finance` covers wallets, escrow, tenders, refunds, courier
withdrawals and reconciliation.

- **Ledger** (`travelops.finance.ledger`). Money movements are posted as
  journal entries with `post_journal_entry(conn, entry_type, ref_type,
  ref_id, description, created_by, lines)`, which returns the new entry's id
  and leaves the surrounding transaction to the caller. `validate_lines`
  checks the `JournalLine`s first: at least one line, every amount positive,
  every direction a `Direction` (debit or credit), and debits equal to
  credits once rounded to cents; it returns the balanced total. A failed
  check raises `LedgerError` (a `ValueError`). The chart of accounts is the
  `Account` enumeration: cash on hand, manual tender clearing, escrow
  liability, supplier and courier payables, customer wallet liability,
  refund liability, settlement adjustment reserve, revenue, fee revenue and
  adjustment expense. `create_ledger_schema` creates the journal tables.
- **Models** (`travelops.finance.models`). Status enumerations
  (`WalletType`, `EscrowStatus`, `TenderType`, `RefundStatus`,
  `WithdrawalStatus`, `ReconciliationStatus`), dataclasses for wallets,
  transactions, escrow accounts (with a `remaining` property), payment
  records, refunds, withdrawal requests, disbursements and reconciliation
  runs and items, and the request and response shapes such as
  `RecordTenderRequest`, `RefundRequest`, `WithdrawalCreateRequest`,
  `PaginatedTransactions`, `ReconciliationReport` and `EscrowSummary`.
  `to_json` renders any of them, or lists of them, with camel-case keys,
  enumeration values as strings and UTC times ending in `Z`.
- **Repository** (`travelops.finance.repository`). `create_schema` creates
  the finance tables together with the journal tables. `Repository` reads
  and writes them; `Repository.transaction()` is a context manager that
  commits the enclosed statements or rolls them back if an exception
  escapes. Transaction listings are newest first, at most 100 per page.
- **Service** (`travelops.finance.service`). `FinanceService(repo, risk=None,
  logger=None)` applies the business rules:
  - a user may view only their own wallet, and only the transactions of a
    wallet they own (`get_wallet`, `get_transactions`,
    `get_owner_transactions`);
  - a tender needs a positive amount and an order type and id; it is stored
    and posted as a debit to manual tender clearing and a credit to cash on
    hand (`record_tender` returns the payment id);
  - a refund must be at least `MIN_REFUND_AMOUNT` (1.00) and in whole units;
    it is stored as approved, posted, and added to the order's escrow refunds
    when the order has an escrow (`process_refund` returns the refund id);
  - a courier may request at most `MAX_DAILY_WITHDRAWAL` (2,500.00) per
    calendar day, counting every request of the day that was not rejected;
  - only a request still in the `requested` state can be approved or
    rejected; approval posts the disbursement, records it and marks the
    request settled, and a rejection needs a reason;
  - an escrow release must be positive and may not exceed what is still
    held; it is posted from escrow liability to supplier payable;
  - `get_reconciliation` totals payments, escrow holdings, releases, refunds
    and disbursements and lists up to 100 unreconciled items.

  Refunds and withdrawal requests can be vetoed by a risk check: pass as
  `risk` any object with `evaluate_action(user_id, action)` that returns a
  `RiskDecision`. The actions asked about are the `RiskAction` values. A
  decision that disallows the action raises `ForbiddenError`; a risk check
  that itself fails is ignored.

## Itineraries

`travelops.itineraries` manages group trips.

- **Models** (`travelops.itineraries.models`). `ItineraryStatus`,
  `Itinerary`, `Checkpoint`, `Member`, `FormDefinition`, `FormSubmission`,
  `ChangeEvent` and the request and response shapes.
  `CreateItineraryRequest.from_dict` reads the public payload (`title`,
  `meetupAt`, `meetupLocationText`, `notes`, matched case-insensitively,
  other keys ignored) and raises `ValueError` for a field of the wrong type.
  `ItineraryResponse.to_json` writes the public field names such as
  `meetupAt`, `meetupLocationText` and `membersCount`.
- **Policy** (`travelops.itineraries.policy`). `can_manage_itinerary` allows
  the organizer and administrators; `can_view_itinerary` also allows
  members.
- **Repository** (`travelops.itineraries.repository`). `create_schema` and
  `Repository`, with paged, filtered listing through `ListFilters` (at most
  100 per page, newest first). Adding a user who is already a member raises
  `ConflictError`; a repeated form submission replaces the earlier payload.
- **Service** (`travelops.itineraries.service`). `ItineraryService` runs the
  lifecycle. Itineraries start as drafts; times are given as RFC 3339
  strings. An itinerary can be published once it has a title, a meetup time
  and a meetup location; otherwise `ValidationError` names the missing
  fields. Editing a published itinerary moves it to `revised` and records
  change events for the meetup time, the meetup location and the notes;
  checkpoint additions, updates and deletions on a published or revised
  itinerary are recorded too. Administrators list every itinerary, other
  users those they organise or have joined. Members see only the change
  events that are already visible, while organizers and administrators see
  them all. Form submissions are checked against the active, required form
  fields.

## Errors

Failures are raised as subclasses of `travelops.errors.DomainError`:
`NotFoundError`, `ForbiddenError`, `ConflictError`, `BadRequestError`,
`ValidationError` (with a `fields` mapping) and `InternalError` (wrapping
the underlying exception), each carrying an `ErrorCode`. To turn an
exception into an HTTP answer, `http_status` gives the status (404, 403,
409, 400, 422, or 500 for anything else) and `error_response` gives the
status with a `{"code": ..., "message": ...}` body. Internal failures are
logged and reported only as "internal server error".

## What the package does not do

- It has no HTTP server, routes or command-line tool. The services are
  plain Python classes; `http_status` and `error_response` help map their
  errors onto whatever web layer calls them.
- It does not authenticate users. Callers pass the acting user's id and
  roles to each service method.
- It ships no risk engine, only the hook described above.
- Bookings and purchase orders are not managed here. `create_schema` makes
  minimal `bookings` and `purchase_orders` tables only so that
  `get_active_escrows` can find the escrows belonging to an owner.
- Wallet balances and wallet transactions can be stored and read, but no
  service operation moves money between wallets.