"""Order fulfilment that waits for an external approval signal."""

from ledgerflow import create_step, create_workflow


class Shipments:
    def __init__(self) -> None:
        self.shipped = []
        self.cancelled = []


def build_fulfilment(shipments: Shipments):
    def pack(data, context):
        return {"parcel": f"parcel-{data['order']}"}

    def unpack(parcel, context):
        shipments.cancelled.append(parcel["parcel"])

    def request_approval(data, context):
        return None

    def ship(data, context):
        shipments.shipped.append(data)
        return {"tracking": f"trk-{data['order']}", "approved_by": data["approved_by"]}

    pack_step = create_step("pack", pack, unpack)
    approve_step = create_step("approve", request_approval, async_=True)
    ship_step = create_step("ship", ship)

    @create_workflow("fulfil-order")
    def fulfil(input):
        parcel = pack_step({"order": input.order_id})
        approval = approve_step({"parcel": parcel.parcel})
        return ship_step({"order": input.order_id, "approved_by": approval.by})

    return fulfil
